"""planrunner - Prompt Plan Execution Service.

Executes structured "prompt plans" against the local machine:
- Documents of ordered prompts with dependency edges
- Typed steps per prompt (files, shell, git, HTTP, database, tests, checks)
- Dependency-gated, retrying, cancellable executions tracked in memory
- Lifecycle events fanned out to subscribers (log, webhooks, SSE)
"""

__version__ = "0.1.0"
