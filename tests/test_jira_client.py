"""Unit tests for storyforge.integrations.jira_client (Jira + Zephyr Scale).

Test strategy
-------------
Jira and Zephyr calls share one FakeSession; routes are told apart by URL
fragment (``/rest/api/3/…`` vs ``/v2/testcases…``).

Coverage
--------
    1. fetch_item: block-document description → HTML, children from sub-tasks and links
    2. Auth: basic (email:token) vs bearer; Zephyr uses its own bearer token
    3. build_field_patch: summary, description document, story points field, sanitized labels
    4. Description override written as blocks with acceptance criteria appended
    5. Sub-task payload (parent, issue type, assignee accountId)
    6. Test cases, description mapping: linked "Test" issues
    7. Test cases, custom_field mapping: one field write, counted as updates
    8. Test cases, zephyr_equivalent: update-in-place on exact name match, create otherwise,
       BDD script, link to the parent's numeric id, first exact match wins
    9. Search (token pagination) and search_artifact_by_name
"""

import base64

import pytest

from storyforge.core.content import EnhancedContent, GivenWhenThen, NameAndScript
from storyforge.integrations.jira_client import JiraClient, ZephyrClient
from storyforge.integrations.tracker_gateway import FieldUpdate, TrackerCredentials, TrackerError

JIRA = "https://contoso.atlassian.net"
ZEPHYR = "https://api.zephyrscale.smartbear.com/v2"

BASE_SETTINGS = {
    "base_url": JIRA,
    "project_key": "SHOP",
    "story_points_field_id": "customfield_10016",
}

VERIFY_LOGIN = NameAndScript(
    name="Verify login",
    bdd_script="Given a member\nWhen they sign in\nThen the dashboard opens",
)


def _adf(text):
    return {"type": "doc", "version": 1, "content": [
        {"type": "paragraph", "content": [{"type": "text", "text": text}]},
    ]}


def _issue_payload(key="SHOP-42", issue_id="10042", **fields):
    data = {
        "summary": "Add login",
        "description": _adf("Members need to sign in."),
        "labels": ["legacy"],
        "assignee": {"accountId": "acc-1", "displayName": "Dana"},
        "issuetype": {"name": "Story"},
        "status": {"name": "To Do"},
        "subtasks": [{"key": "SHOP-43", "fields": {"summary": "PR Review"}}],
        "issuelinks": [
            {"type": {"name": "Relates"}, "outwardIssue": {"key": "SHOP-50", "fields": {"summary": "Test: old"}}},
        ],
    }
    data.update(fields)
    return {"id": issue_id, "key": key, "fields": data}


def _make_client(http, mapping=None, tm_token=None, **settings):
    merged = dict(BASE_SETTINGS, **settings)
    if mapping:
        merged["test_cases_mapping"] = mapping
    client = JiraClient(
        merged,
        TrackerCredentials(
            token="jira-token", auth_type="basic", email="bot@contoso.com", test_management_token=tm_token,
        ),
        session=http,
    )
    client._sleep = lambda s: None
    return client


def _fetch(client, http, fake_response, **payload):
    http.add("GET", "/rest/api/3/issue/SHOP-42", fake_response(200, _issue_payload(**payload)))
    return client.fetch_item("SHOP-42")


def _enhanced(**kwargs):
    data = dict(
        title="Add login",
        role_goal_reason="As a member, I want to log in so that I can see my orders.",
        description_text="Members sign in with email.",
        acceptance_criteria=["Valid credentials open the dashboard"],
        test_cases=[GivenWhenThen("a member", "they sign in", "the dashboard opens")],
        tags=["AIEnhanced"],
    )
    data.update(kwargs)
    return EnhancedContent(**data)


def _texts(doc):
    """Every text run in a block document, in order."""
    out = []

    def walk(nodes):
        for node in nodes or []:
            if node.get("type") == "text":
                out.append(node["text"])
            walk(node.get("content"))

    walk(doc.get("content"))
    return out


# ═════════════════════════════════════════════════════════════════════════════
# 1-2. Reads and auth
# ═════════════════════════════════════════════════════════════════════════════


class TestJiraReads:
    def test_fetch_item(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)

        assert issue.id == "SHOP-42"
        assert issue.issue_id == "10042"
        assert issue.description_markup == "<p>Members need to sign in.</p>"
        assert issue.tags == ["legacy"]
        assert issue.assignee == "acc-1"
        assert issue.child_refs == ["SHOP-43"]
        assert client.existing_child_names(issue) == {"pr review", "test: old"}

    def test_basic_auth_with_email(self, http, fake_response):
        _fetch(_make_client(http), http, fake_response)
        expected = "Basic " + base64.b64encode(b"bot@contoso.com:jira-token").decode("ascii")
        assert http.calls[0]["headers"]["Authorization"] == expected

    def test_bearer_auth(self, http, fake_response):
        client = JiraClient(BASE_SETTINGS, TrackerCredentials(token="oauth", auth_type="bearer"), session=http)
        _fetch(client, http, fake_response)
        assert http.calls[0]["headers"]["Authorization"] == "Bearer oauth"

    def test_fetch_failure(self, http, fake_response):
        http.add("GET", "/rest/api/3/issue/SHOP-404", fake_response(404, {"errorMessages": ["Issue does not exist"]}))
        with pytest.raises(TrackerError) as exc_info:
            _make_client(http).fetch_item("SHOP-404")
        assert exc_info.value.status_code == 404

    def test_list_items_follows_page_tokens(self, http, fake_response):
        http.add(
            "GET", "/rest/api/3/search/jql",
            fake_response(200, {"issues": [_issue_payload()], "nextPageToken": "t2", "isLast": False}),
            fake_response(200, {"issues": [_issue_payload(key="SHOP-44", issue_id="10044")], "isLast": True}),
        )

        issues = _make_client(http).list_items(item_type="Bug", state="In Progress", limit=10)

        assert [i.id for i in issues] == ["SHOP-42", "SHOP-44"]
        first, second = http.calls
        assert first["params"]["jql"] == (
            'project = "SHOP" AND issuetype = "Bug" AND status = "In Progress" ORDER BY updated DESC'
        )
        assert "nextPageToken" not in first["params"]
        assert second["params"]["nextPageToken"] == "t2"

    def test_search_artifact_by_exact_summary(self, http, fake_response):
        http.add("GET", "/rest/api/3/search/jql", fake_response(200, {"issues": [
            {"key": "SHOP-7", "fields": {"summary": "Verify login again"}},
            {"key": "SHOP-8", "fields": {"summary": "Verify login"}},
        ], "isLast": True}))

        assert _make_client(http).search_artifact_by_name("Verify login") == "SHOP-8"
        assert 'summary ~ "\\"Verify login\\""' in http.calls[0]["params"]["jql"]

    def test_search_failure_returns_none(self, http, fake_response):
        http.add("GET", "/rest/api/3/search/jql", fake_response(400, text="bad jql"))
        assert _make_client(http).search_artifact_by_name("x") is None

    def test_connection(self, http, fake_response):
        http.add("GET", "/rest/api/3/myself", fake_response(200, {"accountId": "acc-bot"}))
        assert _make_client(http).test_connection().ok


# ═════════════════════════════════════════════════════════════════════════════
# 3-4. Field patch
# ═════════════════════════════════════════════════════════════════════════════


class TestJiraFieldPatch:
    def test_full_patch(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        update = FieldUpdate(
            enhanced=_enhanced(tags=["AI Enhanced", "legacy"]), title="Sign in with email",
            include_description=True, include_acceptance=True, story_points=5,
        )

        fields = client.build_field_patch(issue, update)["fields"]

        assert fields["summary"] == "Sign in with email"
        assert fields["customfield_10016"] == 5
        assert fields["labels"] == ["legacy", "AI-Enhanced"]
        doc = fields["description"]
        assert doc["type"] == "doc"
        texts = _texts(doc)
        assert texts.index("Acceptance Criteria") < texts.index("Test Cases")
        assert "Given a member, When they sign in, Then the dashboard opens" in texts

    def test_title_only(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)

        fields = client.build_field_patch(issue, FieldUpdate(enhanced=_enhanced(), title="New"))["fields"]

        assert set(fields) == {"summary", "labels"}
        assert fields["labels"] == ["legacy", "AIEnhanced"]

    def test_story_points_skipped_without_field(self, http, fake_response):
        client = _make_client(http, story_points_field_id="")
        issue = _fetch(client, http, fake_response)
        fields = client.build_field_patch(issue, FieldUpdate(enhanced=_enhanced(), story_points=3))["fields"]
        assert "customfield_10016" not in fields

    def test_description_override_as_blocks(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        update = FieldUpdate(
            enhanced=_enhanced(), include_description=True, description_override="<p>Edited <em>body</em></p>",
            acceptance_override="<ul><li>Edited AC</li></ul>",
        )

        doc = client.build_field_patch(issue, update)["fields"]["description"]

        first = doc["content"][0]
        assert first["content"] == [
            {"type": "text", "text": "Edited "},
            {"type": "text", "text": "body", "marks": [{"type": "em"}]},
        ]
        texts = _texts(doc)
        assert "Edited AC" in texts
        assert "Valid credentials open the dashboard" not in texts

    def test_custom_field_mapping_keeps_cases_out_of_description(self, http, fake_response):
        client = _make_client(http, mapping="custom_field", test_cases_field_id="customfield_10100")
        issue = _fetch(client, http, fake_response)
        doc = client.build_field_patch(issue, FieldUpdate(enhanced=_enhanced(), include_description=True))
        assert "Test Cases" not in _texts(doc["fields"]["description"])

    def test_empty_content_keeps_original_text(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        update = FieldUpdate(
            enhanced=EnhancedContent(), include_description=True, fallback_description="<p>Original &amp; kept</p>",
        )
        doc = client.build_field_patch(issue, update)["fields"]["description"]
        assert _texts(doc) == ["Original & kept"]

    def test_patch_fields_uses_put(self, http, fake_response):
        http.add("PUT", "/rest/api/3/issue/SHOP-42", fake_response(204, text=""))
        result = _make_client(http).patch_fields("SHOP-42", {"fields": {"summary": "x"}})
        assert result.ok
        assert http.calls[0]["json"] == {"fields": {"summary": "x"}}


# ═════════════════════════════════════════════════════════════════════════════
# 5-6. Sub-tasks and linked test issues
# ═════════════════════════════════════════════════════════════════════════════


class TestJiraChildren:
    def test_subtask_payload(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        http.add("POST", "/rest/api/3/issue", fake_response(201, {"id": "10051", "key": "SHOP-51"}))

        counts = client.create_subtasks(
            issue, ["Implement OAuth flow", "pr review"], client.existing_child_names(issue),
        )

        assert counts.created == 1
        body = http.calls_to("POST", "/rest/api/3/issue")[0]["json"]["fields"]
        assert body == {
            "project": {"key": "SHOP"},
            "summary": "Implement OAuth flow",
            "parent": {"key": "SHOP-42"},
            "issuetype": {"name": "Sub-task"},
            "assignee": {"accountId": "acc-1"},
        }

    def test_linked_test_issues(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        http.add("POST", "/rest/api/3/issue", fake_response(201, {"id": "10052", "key": "SHOP-52"}))
        http.add("POST", "/rest/api/3/issueLink", fake_response(201, text=""))
        cases = [GivenWhenThen("a member", "they sign in", "the dashboard opens"), GivenWhenThen("", "", "old")]

        counts = client.sync_test_cases(issue, cases, client.existing_child_names(issue))

        assert (counts.created, counts.updated, counts.warnings) == (1, 0, [])
        created = http.calls_to("POST", "/rest/api/3/issue")[0]["json"]["fields"]
        assert created["summary"] == "Test: the dashboard opens"
        assert created["issuetype"] == {"name": "Test"}
        assert _texts(created["description"]) == ["Given a member", "When they sign in", "Then the dashboard opens"]
        link = http.calls_to("POST", "/rest/api/3/issueLink")[0]["json"]
        assert link == {
            "type": {"name": "Relates"},
            "inwardIssue": {"key": "SHOP-52"},
            "outwardIssue": {"key": "SHOP-42"},
        }

    def test_link_failure_is_a_warning(self, http, fake_response):
        client = _make_client(http)
        issue = _fetch(client, http, fake_response)
        http.add("POST", "/rest/api/3/issue", fake_response(201, {"id": "10052", "key": "SHOP-52"}))
        http.add("POST", "/rest/api/3/issueLink", fake_response(403, text="no link permission"))

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], set())

        assert counts.created == 1
        assert counts.warnings == ["Test case 'Verify login' was not linked: HTTP 403: no link permission"]


# ═════════════════════════════════════════════════════════════════════════════
# 7. Custom field mapping
# ═════════════════════════════════════════════════════════════════════════════


class TestCustomFieldMapping:
    def test_cases_written_to_field(self, http, fake_response):
        client = _make_client(http, mapping="custom_field", test_cases_field_id="customfield_10100")
        issue = _fetch(client, http, fake_response)
        http.add("PUT", "/rest/api/3/issue/SHOP-42", fake_response(204, text=""))
        cases = [GivenWhenThen("a", "b", "c"), VERIFY_LOGIN]

        counts = client.sync_test_cases(issue, cases, set())

        assert (counts.created, counts.updated) == (0, 2)
        value = http.calls_to("PUT", "/rest/api/3/issue/SHOP-42")[0]["json"]["fields"]["customfield_10100"]
        assert _texts(value) == ["Given a, When b, Then c", "Verify login"]

    def test_missing_field_id(self, http, fake_response):
        client = _make_client(http, mapping="custom_field")
        issue = _fetch(client, http, fake_response)

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], set())

        assert counts.updated == 0
        assert "test_cases_field_id" in counts.warnings[0]
        assert http.calls_to("PUT", "/rest/api/3/issue") == []


# ═════════════════════════════════════════════════════════════════════════════
# 8. Zephyr Scale mapping
# ═════════════════════════════════════════════════════════════════════════════


class TestZephyrMapping:
    def _zephyr_client(self, http, fake_response):
        client = _make_client(http, mapping="zephyr_equivalent", tm_token="zephyr-token")
        return client, _fetch(client, http, fake_response)

    def test_existing_case_updated_in_place(self, http, fake_response):
        client, issue = self._zephyr_client(http, fake_response)
        http.add("GET", "/v2/testcases", fake_response(200, {
            "values": [{"key": "SHOP-T1", "id": 1, "name": "Verify login", "objective": "old"}],
            "isLast": True,
        }))
        http.add("GET", "/v2/testcases/SHOP-T1", fake_response(200, {
            "key": "SHOP-T1", "id": 1, "name": "Verify login", "objective": "old",
            "project": {"id": 10000}, "status": {"id": 3}, "priority": {"id": 2},
        }))
        http.add("PUT", "/v2/testcases/SHOP-T1", fake_response(200, text=""))
        http.add("POST", "/v2/testcases/SHOP-T1/testscript", fake_response(201, {"id": 5}))
        http.add("POST", "/v2/testcases/SHOP-T1/links/issues", fake_response(201, {"id": 6}))

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], client.existing_child_names(issue))

        assert (counts.created, counts.updated, counts.warnings) == (0, 1, [])
        assert not [c for c in http.calls if c["method"] == "POST" and c["url"].endswith("/testcases")]
        put = http.calls_to("PUT", "/v2/testcases/SHOP-T1")[0]["json"]
        assert put["status"] == {"id": 3}
        assert put["priority"] == {"id": 2}
        assert put["objective"].startswith("<strong>Verify login</strong>")
        script = http.calls_to("POST", "/testscript")[0]["json"]
        assert script == {"type": "bdd", "text": VERIFY_LOGIN.bdd_script}
        link = http.calls_to("POST", "/links/issues")[0]
        assert link["json"] == {"issueId": 10042}
        assert link["headers"]["Authorization"] == "Bearer zephyr-token"
        assert link["url"] == f"{ZEPHYR}/testcases/SHOP-T1/links/issues"

    def test_new_case_created(self, http, fake_response):
        client, issue = self._zephyr_client(http, fake_response)
        http.add("GET", "/v2/testcases", fake_response(200, {"values": [], "isLast": True}))
        http.add("POST", "/v2/testcases", fake_response(201, {"key": "SHOP-T9", "id": 9}))
        http.add("POST", "/v2/testcases/SHOP-T9/testscript", fake_response(201, {"id": 1}))
        http.add("POST", "/v2/testcases/SHOP-T9/links/issues", fake_response(201, {"id": 2}))

        counts = client.sync_test_cases(issue, [GivenWhenThen("a member", "they sign in", "it works")], set())

        assert (counts.created, counts.updated, counts.warnings) == (1, 0, [])
        create = http.calls_to("POST", "/v2/testcases")[0]["json"]
        assert create["projectKey"] == "SHOP"
        assert create["name"] == "Test: it works"
        script = http.calls_to("POST", "/testscript")[0]["json"]["text"]
        assert script == "Given a member\nWhen they sign in\nThen it works"

    def test_search_pages_until_match(self, http, fake_response):
        http.add(
            "GET", "/v2/testcases",
            fake_response(200, {"values": [{"key": "A", "name": "Other"}], "isLast": False}),
            fake_response(200, {"values": [{"key": "B", "name": "Verify login"}], "isLast": True}),
        )
        zephyr = ZephyrClient("t", "SHOP", session=http)

        found = zephyr.find_by_name("Verify login")

        assert found.key == "B"
        assert [c["params"]["startAt"] for c in http.calls] == [0, 1]

    def test_first_exact_match_wins(self, http, fake_response):
        http.add("GET", "/v2/testcases", fake_response(200, {"values": [
            {"key": "A", "name": "Verify login (copy)"},
            {"key": "B", "name": "verify login"},
            {"key": "C", "name": "Verify login"},
            {"key": "D", "name": "Verify login"},
        ], "isLast": True}))

        assert ZephyrClient("t", "SHOP", session=http).find_by_name("Verify login").key == "C"

    def test_custom_base_url(self, http, fake_response):
        client = _make_client(
            http, mapping="zephyr_equivalent", tm_token="z", test_management_base_url="https://zephyr.example/v2/",
        )
        assert client.zephyr().base_url == "https://zephyr.example/v2"

    def test_missing_token_is_a_warning(self, http, fake_response):
        client = _make_client(http, mapping="zephyr_equivalent")
        issue = _fetch(client, http, fake_response)

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], set())

        assert counts.created == counts.updated == 0
        assert "no test-management token" in counts.warnings[0]

    def test_search_failure_is_a_warning(self, http, fake_response):
        client, issue = self._zephyr_client(http, fake_response)
        http.add("GET", "/v2/testcases", fake_response(401, text="bad token"))

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], set())

        assert counts.created == counts.updated == 0
        assert counts.warnings[0].startswith("Zephyr test case 'Verify login' failed")

    def test_link_needs_numeric_parent_id(self, http, fake_response):
        client = _make_client(http, mapping="zephyr_equivalent", tm_token="z")
        issue = _fetch(client, http, fake_response, issue_id="")
        http.add("GET", "/v2/testcases", fake_response(200, {"values": [], "isLast": True}))
        http.add("POST", "/v2/testcases", fake_response(201, {"key": "SHOP-T9", "id": 9}))
        http.add("POST", "/v2/testcases/SHOP-T9/testscript", fake_response(201, {"id": 1}))

        counts = client.sync_test_cases(issue, [VERIFY_LOGIN], set())

        assert counts.created == 1
        assert "not linked" in counts.warnings[0]
        assert http.calls_to("POST", "/links/issues") == []
