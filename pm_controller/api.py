"""
Status API - FastAPI Application

Read-only view of the task board for dashboards and scripts, plus the
GitHub push webhook that keeps the working copy in sync with main.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from . import __version__
from .orchestrator import AgentOrchestrator
from .task_model import TaskStatus

logger = logging.getLogger("status_api")


class TaskListResponse(BaseModel):
    status: Optional[str] = None
    count: int
    tasks: List[Dict[str, Any]]


class WebhookResponse(BaseModel):
    received: bool
    event: str
    action: str
    detail: Optional[Dict[str, Any]] = None


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check an X-Hub-Signature-256 header against the raw body."""
    if not secret or not signature:
        return False
    digest = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature)


def create_app(orchestrator: AgentOrchestrator) -> FastAPI:
    app = FastAPI(
        title="AI PM Team - Status API",
        description="Task board, progress and webhook endpoints",
        version=__version__,
    )
    settings = orchestrator.settings

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/")
    async def root():
        return {
            "service": "AI PM Team",
            "status": "running",
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
        }

    @app.get("/health")
    async def health():
        """Full diagnostic report (runs the checks in a worker thread)."""
        return await asyncio.to_thread(orchestrator.health.run_all_checks)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------
    @app.get("/tasks", response_model=TaskListResponse)
    async def list_tasks(status: Optional[str] = None):
        if status:
            try:
                statuses = [TaskStatus.from_value(status)]
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        else:
            statuses = list(TaskStatus)
        tasks = [r.to_dict() for s in statuses for r in orchestrator.store.list(s)]
        return TaskListResponse(status=status, count=len(tasks), tasks=tasks)

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        record = orchestrator.store.find(task_id)
        if not record:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return record.to_dict(include_body=True)

    @app.get("/blockers")
    async def blockers():
        blocked = orchestrator.conversation.get_blocked_tasks()
        return {"count": len(blocked), "blocked": blocked}

    @app.get("/progress")
    async def progress():
        return orchestrator.progress.get_overall_progress()

    @app.get("/flags")
    async def flags():
        return {"flags": orchestrator.flags.get_all_flags(), "stats": orchestrator.flags.get_stats()}

    @app.get("/agents")
    async def agents():
        return orchestrator.get_status()

    # -------------------------------------------------------------------------
    # GitHub Webhook
    # -------------------------------------------------------------------------
    @app.post("/webhook/github", response_model=WebhookResponse)
    async def github_webhook(request: Request):
        body = await request.body()
        event = request.headers.get("X-GitHub-Event", "unknown")
        logger.info(f"Webhook received: {event} ({request.headers.get('X-GitHub-Delivery', '-')})")

        if not verify_signature(settings.github_webhook_secret, body, request.headers.get("X-Hub-Signature-256")):
            logger.warning("Webhook rejected: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        if event != "push":
            return WebhookResponse(received=True, event=event, action="ignored")

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Payload must be a JSON object")

        ref = payload.get("ref", "")
        if ref != f"refs/heads/{settings.main_branch}":
            return WebhookResponse(received=True, event=event, action="ignored", detail={"ref": ref})

        result = await asyncio.to_thread(orchestrator.git.sync_with_remote, settings.main_branch)
        if result["success"] and result.get("updated"):
            await orchestrator.notify(f"🔄 Synced <code>{settings.main_branch}</code> to {result['commit'][:7]}")
        elif not result["success"]:
            logger.error(f"Webhook sync failed: {result.get('error')}")
        return WebhookResponse(received=True, event=event, action="sync", detail=result)

    return app
