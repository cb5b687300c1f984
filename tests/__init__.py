"""
Test Suite for the AI PM Team

- pm_controller tests: task files, stores, PM and specialist agents,
  peripheral services, status API
- pm_bot tests: Telegram command handlers and message delivery
"""
