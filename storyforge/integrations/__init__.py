"""storyforge.integrations — tracker gateway modules.

All outbound HTTP calls to trackers go through a client in this package,
never via bare `requests` calls in services or blueprints. Every call is:
  - Authenticated (credentials injected by the client)
  - Retried with backoff when the method is idempotent
  - Logged with tracker, attempt and status

Current clients:
  ado_client.AzureDevOpsClient — Azure DevOps work items (REST 7.1)
  jira_client.JiraClient       — Jira Cloud issues (REST v3), with
                                 jira_client.ZephyrClient for Zephyr Scale
"""
