"""
StoryForge
AI module.

Submodules:
    - gateway: model gateway (provider routing, timeout, retry with backoff)
    - guardrails: project technology guardrails (parse, scan, findings)
    - enhancer: generation orchestrator (retrieval → generation → post-processing)
    - task_runner: background execution of large runs
"""
