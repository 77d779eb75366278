import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from config import settings
from db import SessionLocal, get_db, init_db
from models import (
    PROCESSABLE_STATUSES,
    TERMINAL_STATUSES,
    Verification,
    VerificationStatus,
)
from pipeline.run_pipeline import VerificationPipeline
from services.job_queue import JobQueue
from services.webhooks import WebhookNotifier

logger = logging.getLogger(__name__)

PROCESS_JOB = "process_verification"
WEBHOOK_JOB = "deliver_webhook"


def build_job_queue(session_factory=SessionLocal) -> JobQueue:
    """Wire the decision pipeline and webhook delivery onto one queue instance."""
    queue = JobQueue(
        concurrency=settings.JOB_QUEUE_CONCURRENCY,
        retry_base_seconds=settings.JOB_RETRY_BASE_SECONDS,
    )
    notifier = WebhookNotifier(session_factory, timeout=settings.WEBHOOK_TIMEOUT_SECONDS)

    def notify(organization_id, event, payload):
        queue.enqueue(
            WEBHOOK_JOB,
            {"organizationId": organization_id, "event": event, "payload": payload},
            max_attempts=1,
        )

    pipeline = VerificationPipeline(session_factory=session_factory, notify=notify)

    async def deliver_webhook(data):
        # frees the worker slot at the deadline even if the endpoint is still stalling
        try:
            await asyncio.wait_for(
                asyncio.to_thread(notifier.deliver, data["organizationId"], data["event"], data["payload"]),
                timeout=notifier.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[WEBHOOK] {data['event']} delivery for org {data['organizationId']} "
                f"abandoned after {notifier.timeout}s"
            )

    queue.register_handler(PROCESS_JOB, lambda data: pipeline.decide(data["verificationId"]))
    queue.register_handler(WEBHOOK_JOB, deliver_webhook)
    return queue


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    queue = build_job_queue()
    await queue.start()
    app.state.job_queue = queue
    try:
        yield
    finally:
        await queue.stop()


app = FastAPI(
    title="Identity Verification Service",
    description="Document, liveness and face-match decisions for identity verifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


# ------------------------
# Verification processing
# ------------------------
@app.post("/api/v1/verifications/{verification_id}/process")
def process_verification(
    verification_id: str,
    x_organization_id: str = Header(...),
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    """
    Mark an uploaded verification as processing and queue its decision.
    """
    verification = db.get(Verification, verification_id)
    if verification is None:
        raise HTTPException(status_code=404, detail="Verification not found")

    if verification.organization_id != x_organization_id:
        raise HTTPException(status_code=403, detail="Forbidden")

    current = VerificationStatus(verification.status)
    if current is VerificationStatus.PROCESSING or current in TERMINAL_STATUSES:
        return {
            "verificationId": verification_id,
            "status": current.value,
            "message": (
                "Verification is already being processed"
                if current is VerificationStatus.PROCESSING
                else f"Verification is already {current.value}"
            ),
        }

    if current not in PROCESSABLE_STATUSES:
        logger.warning(f"[API] verification {verification_id} not ready ({current.value})")
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Verification not ready for processing",
                "currentStatus": current.value,
                "requiredStatus": sorted(s.value for s in PROCESSABLE_STATUSES),
            },
        )

    verification.status = VerificationStatus.PROCESSING.value
    db.commit()

    job_id = queue.enqueue(PROCESS_JOB, {"verificationId": verification_id})

    return {
        "verificationId": verification_id,
        "status": VerificationStatus.PROCESSING.value,
        "jobId": job_id,
        "processingSteps": {
            "documentAuthenticity": {"status": "processing"},
            "faceMatching": {"status": "pending"},
            "securityScreening": {"status": "pending"},
        },
    }


# ------------------------
# Health Check
# ------------------------
@app.get("/health")
async def health_check(request: Request):
    queue = getattr(request.app.state, "job_queue", None)
    return {
        "status": "healthy",
        "service": "identity-verification",
        "queueSize": queue.queue_size() if queue else 0,
        "activeJobs": queue.active_jobs() if queue else 0,
    }


# ------------------------
# Local Dev Entry
# ------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
