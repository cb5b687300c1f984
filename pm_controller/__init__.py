"""
AI PM Team Controller

Core of the chat-driven project-management team. A single long-lived
process watches a filesystem task queue, drafts and triages work with an
LLM completion API, and relays activity through a Telegram bot.

Components:
- config: environment-driven settings and logging setup
- task_model / task_store: task files and the status-directory state machine
- pm_agent: project manager agent (requests, approvals, standups)
- agents: specialist role agents (R&D, Architect, Backend, QA, ...)
- team_comms: in-chat team conversation feed
- scheduler / watcher: cron jobs and filesystem events
- orchestrator: wires everything together
- api: read-only status API and GitHub webhook

Peripheral services:
- git_ops, permissions, feature_flags, health, test_runner, workspace,
  approvals, progress
"""

__version__ = "0.4.0"
