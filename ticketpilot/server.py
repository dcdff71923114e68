"""Webhook ingress and admin endpoints."""

import asyncio
import json
import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .services import Services
from .storage.queue import JobStatus
from .webhooks.signature import SignatureInvalid, verify_signature

logger = logging.getLogger(__name__)

_basic = HTTPBasic(auto_error=False)


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI application around already-wired services."""
    config = services.config
    app = FastAPI(title="TicketPilot", version="0.1.0")
    app.state.services = services

    def require_admin(credentials: Optional[HTTPBasicCredentials] = Depends(_basic)) -> str:
        user, password = config.server.admin_user, config.server.admin_pass
        if not user or not password:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin credentials are not configured",
            )
        valid = credentials is not None and (
            secrets.compare_digest(credentials.username.encode(), user.encode())
            and secrets.compare_digest(credentials.password.encode(), password.encode())
        )
        if not valid:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return user

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhook")
    async def webhook(
        request: Request,
        linear_signature: Optional[str] = Header(default=None),
    ) -> dict:
        body = await request.body()
        try:
            verify_signature(body, linear_signature, config.server.webhook_secret)
        except SignatureInvalid as e:
            logger.warning("Rejected webhook: %s", e)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

        try:
            event = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        if not isinstance(event, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event")

        decision = await services.classifier.classify(event)
        if decision.enqueues:
            await asyncio.to_thread(services.dispatcher.enqueue, decision.task, decision.job_id)
        return decision.response()

    @app.get("/admin/queues")
    async def admin_queues(
        job_status: Optional[JobStatus] = None,
        limit: int = 50,
        _: str = Depends(require_admin),
    ) -> dict:
        queue = services.queue
        counts = await asyncio.to_thread(queue.counts)
        jobs = await asyncio.to_thread(queue.list_jobs, status=job_status, limit=limit)
        return {"queue": queue.name, "counts": counts, "jobs": [job.to_dict() for job in jobs]}

    return app
