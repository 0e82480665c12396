"""Durable job queue on the ``job`` table.

``(kind, key)`` is unique, so enqueueing the same key twice is a no-op.
Workers claim a job with a conditional UPDATE on its status, and reclaim
running jobs whose worker let the lease lapse.
"""
import json
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from playbymail.errors import PermanentFailure, PlayByMailError
from playbymail.models import Job, JobStatus, utcnow


logger = logging.getLogger(__name__)

PROCESS_GAME_TURN = 'process_game_turn'
DELIVER_TURN_SHEET = 'deliver_turn_sheet'
SEND_JOIN_APPROVAL = 'send_join_approval'

# Seconds a running job may go without finishing before another worker reclaims it
DEFAULT_LEASE_SEC = 900

Handler = Callable[..., None]


def turn_job_key(instance_id: str, turn_number: int) -> str:
    return f"{instance_id}:{turn_number}"


def backoff_delay(attempt: int, base: int = 10, cap: int = 900) -> int:
    return min(cap, base * (2 ** max(0, attempt - 1)))


def enqueue(session, kind: str, key: str, payload: Optional[dict] = None, run_at=None,
            revive: bool = False) -> Tuple[Job, bool]:
    """Add a job unless one with the same kind and key exists. Does not commit.

    With ``revive`` a job that already exhausted its attempts is reset and
    queued again; otherwise an existing job of any status wins.
    """
    existing = session.query(Job).filter_by(kind=kind, key=key).first()
    if existing is not None:
        if revive and existing.status == JobStatus.FAILED:
            existing.status = JobStatus.AVAILABLE
            existing.attempts = 0
            existing.payload = json.dumps(payload or {})
            existing.scheduled_at = run_at or utcnow()
            existing.started_at = None
            existing.finished_at = None
            session.flush()
            logger.warning(f"[job-revive] kind={kind} key={key} last_error={existing.last_error}")
            return existing, True
        return existing, False
    job = Job(kind=kind, key=key, payload=json.dumps(payload or {}), scheduled_at=run_at or utcnow(),
              status=JobStatus.AVAILABLE, attempts=0)
    try:
        with session.begin_nested():
            session.add(job)
            session.flush()
    except IntegrityError:
        return session.query(Job).filter_by(kind=kind, key=key).one(), False
    logger.info(f"[job-enqueue] kind={kind} key={key} run_at={job.scheduled_at.isoformat()}")
    return job, True


def claim_next_job(session, now=None, lease_seconds: int = DEFAULT_LEASE_SEC) -> Optional[Job]:
    """Claim the next due job.

    A job still running after ``lease_seconds`` belongs to a worker that died;
    it is claimed again like an available one.
    """
    now = now or utcnow()
    stale_before = now - timedelta(seconds=lease_seconds)
    candidates = (
        session.query(Job.id, Job.status, Job.started_at)
        .filter(or_(
            and_(Job.status == JobStatus.AVAILABLE, Job.scheduled_at <= now),
            and_(Job.status == JobStatus.RUNNING, Job.started_at <= stale_before),
        ))
        .order_by(Job.scheduled_at, Job.created_at)
        .limit(10)
        .all()
    )
    for job_id, status, started_at in candidates:
        conditions = [Job.id == job_id, Job.status == status]
        if status == JobStatus.RUNNING:
            conditions.append(Job.started_at == started_at)
        result = session.execute(
            update(Job)
            .where(*conditions)
            .values(status=JobStatus.RUNNING, attempts=Job.attempts + 1, started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            if status == JobStatus.RUNNING:
                logger.warning(f"[job-reclaim] job={job_id} started_at={started_at.isoformat()}")
            return session.get(Job, job_id)
    session.rollback()
    return None


def _finish(session, job_id: str, status: str, error: Optional[str] = None, retry_at=None) -> Job:
    job = session.get(Job, job_id)
    job.status = status
    job.last_error = error
    if retry_at is not None:
        job.scheduled_at = retry_at
    else:
        job.finished_at = utcnow()
    session.commit()
    return job


def run_next_job(session, services, handlers: Dict[str, Handler], now=None) -> Optional[Job]:
    """Claim and run one job. Returns the job, or None when the queue is idle."""
    config = services.config
    job = claim_next_job(session, now, int(config.get('JOB_LEASE_SEC', DEFAULT_LEASE_SEC)))
    if job is None:
        return None
    job_id, kind, key, attempts = job.id, job.kind, job.key, job.attempts
    if attempts > int(config.get('JOB_MAX_ATTEMPTS', 5)):
        # reclaimed after its last allowed attempt never finished
        logger.error(f"[job-failed] kind={kind} key={key} attempt={attempts} error=lease expired")
        return _finish(session, job_id, JobStatus.FAILED, 'worker lease expired')
    handler = handlers.get(kind)
    logger.info(f"[job-start] kind={kind} key={key} attempt={attempts}")
    try:
        if handler is None:
            raise PermanentFailure(f'no handler for job kind {kind}')
        handler(session, services, job.get_payload())
    except PlayByMailError as exc:
        session.rollback()
        return _fail(session, job_id, kind, key, attempts, exc, exc.transient, config)
    except Exception as exc:
        session.rollback()
        logger.exception(f"[job-error] kind={kind} key={key} attempt={attempts}")
        return _fail(session, job_id, kind, key, attempts, exc, True, config)
    logger.info(f"[job-done] kind={kind} key={key} attempt={attempts}")
    return _finish(session, job_id, JobStatus.COMPLETED)


def _fail(session, job_id, kind, key, attempts, exc, transient, config) -> Job:
    error = f"{type(exc).__name__}: {exc}"
    if not transient:
        logger.warning(f"[job-discard] kind={kind} key={key} attempt={attempts} error={error}")
        return _finish(session, job_id, JobStatus.DISCARDED, error)
    if attempts >= int(config.get('JOB_MAX_ATTEMPTS', 5)):
        logger.error(f"[job-failed] kind={kind} key={key} attempt={attempts} error={error}")
        return _finish(session, job_id, JobStatus.FAILED, error)
    delay = backoff_delay(attempts, int(config.get('JOB_BACKOFF_BASE_SEC', 10)), int(config.get('JOB_BACKOFF_MAX_SEC', 900)))
    logger.warning(f"[job-retry] kind={kind} key={key} attempt={attempts} delay={delay}s error={error}")
    return _finish(session, job_id, JobStatus.AVAILABLE, error, retry_at=utcnow() + timedelta(seconds=delay))
