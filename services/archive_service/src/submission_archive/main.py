import logging
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import FileResponse, RedirectResponse
from itsdangerous import BadSignature

from .actions import SubmissionActions
from .clients import HttpNotificationSender, LoggingNotificationSender, NotificationSender
from .config import settings
from .db import init_db
from .errors import ConflictError, ExpiredError, GoneError, NotFoundError, TransientInfraError, ValidationError
from .listing import SubmissionQuery, list_submissions, status_view
from .queueing import LocalJobQueue, QueueConsumer
from .repository import SqlCourseLookup, SqlSubmissionStore
from .schemas import CompleteUploadRequest, CompleteUploadResponse, SubmissionPage, SubmissionStatusOut
from .storage import LocalObjectStore
from .tokens import DownloadTokenService
from .worker import ArchiveWorker

logger = logging.getLogger(__name__)

app = FastAPI(title="Submission Archive Service", version="1.0.0")


@dataclass
class Services:
    submissions: SqlSubmissionStore
    objects: LocalObjectStore
    tokens: DownloadTokenService
    actions: SubmissionActions
    worker: ArchiveWorker
    queue: LocalJobQueue
    consumer: QueueConsumer
    notifier: NotificationSender


def build_services() -> Services:
    submissions = SqlSubmissionStore()
    courses = SqlCourseLookup()
    objects = LocalObjectStore(settings.files_dir, settings.public_base_url, settings.signing_secret, settings.chunk_size)
    if settings.mail_relay_url and settings.ses_source_email:
        notifier = HttpNotificationSender(settings.mail_relay_url, settings.ses_source_email)
    else:
        notifier = LoggingNotificationSender()

    queue = LocalJobQueue(settings.queue_visibility_timeout, settings.queue_max_receive_count)
    worker = ArchiveWorker(
        submissions,
        objects,
        notifier=notifier,
        courses=courses,
        token_ttl_days=settings.token_ttl_days,
        archive_prefix=settings.archive_prefix,
        chunk_size=settings.chunk_size,
        pipe_chunks=settings.archive_pipe_chunks,
        reply_to_fallback=settings.reply_to_fallback,
    )
    return Services(
        submissions=submissions,
        objects=objects,
        tokens=DownloadTokenService(submissions, objects, notifier, settings.download_link_ttl_seconds),
        actions=SubmissionActions(submissions, objects, queue, notifier, courses),
        worker=worker,
        queue=queue,
        consumer=QueueConsumer(queue, worker.process),
        notifier=notifier,
    )


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("startup")
def _startup():
    configure_logging(settings.log_level)
    Path(settings.files_dir).mkdir(parents=True, exist_ok=True)
    init_db()
    get_services().consumer.start()


@app.on_event("shutdown")
def _shutdown():
    if _services is not None:
        _services.consumer.stop(timeout=5.0)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/downloads/{submission_id}/{token}")
def download(submission_id: str, token: str, services: Services = Depends(get_services)):
    try:
        target = services.tokens.resolve(submission_id, token)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExpiredError as e:
        raise HTTPException(status_code=410, detail=str(e))
    except ValidationError as e:
        logger.error("Malformed submission record", extra={"submission_id": submission_id})
        raise HTTPException(status_code=500, detail=f"Submission data is invalid: {e}")
    return RedirectResponse(target.location, status_code=302)


@app.get("/submissions/{submission_id}", response_model=SubmissionStatusOut, response_model_by_alias=True)
def get_submission(submission_id: str, services: Services = Depends(get_services)):
    try:
        record = services.submissions.get(submission_id)
    except ValidationError as e:
        logger.error("Malformed submission record", extra={"submission_id": submission_id})
        raise HTTPException(status_code=500, detail=f"Submission data is invalid: {e}")
    except TransientInfraError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not record:
        raise HTTPException(status_code=404, detail="Submission not found")
    return status_view(record)


@app.post(
    "/submissions/{submission_id}/complete",
    response_model=CompleteUploadResponse,
    response_model_by_alias=True,
    status_code=202,
)
def complete_upload(
    submission_id: str,
    request: Request,
    payload: CompleteUploadRequest | None = Body(default=None),
    services: Services = Depends(get_services),
):
    base_url = str(request.base_url).rstrip("/")
    try:
        status = services.actions.complete_upload(submission_id, payload or CompleteUploadRequest(), base_url)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GoneError as e:
        raise HTTPException(status_code=410, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Failed to queue archive job: {e}")
    return CompleteUploadResponse(submission_id=submission_id, status=status)


@app.get("/admin/submissions", response_model=SubmissionPage, response_model_by_alias=True)
def list_admin_submissions(
    page: str | None = None,
    page_size: str | None = Query(default=None, alias="pageSize"),
    search: str | None = None,
    status: str | None = None,
    course_id: str | None = Query(default=None, alias="courseId"),
    educator_email: str | None = Query(default=None, alias="educatorEmail"),
    student: str | None = None,
    accessed: str | None = None,
    created_after: str | None = Query(default=None, alias="createdAfter"),
    created_before: str | None = Query(default=None, alias="createdBefore"),
    sort_field: str | None = Query(default=None, alias="sortField"),
    sort_order: str | None = Query(default=None, alias="sortOrder"),
    services: Services = Depends(get_services),
):
    query = SubmissionQuery.from_params(
        page=page,
        page_size=page_size,
        search=search,
        status=status,
        course_id=course_id,
        educator_email=educator_email,
        student=student,
        accessed=accessed,
        created_after=created_after,
        created_before=created_before,
        sort_field=sort_field,
        sort_order=sort_order,
    )
    try:
        return list_submissions(services.submissions, query)
    except TransientInfraError:
        logger.exception("Failed to list submissions")
        raise HTTPException(status_code=500, detail="Failed to load submissions")


@app.delete("/admin/submissions/{submission_id}", status_code=204)
def delete_submission(
    submission_id: str,
    x_admin_email: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    try:
        services.actions.delete_submission(submission_id, x_admin_email)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        logger.error("Submission cannot be deleted: %s", e, extra={"submission_id": submission_id})
        raise HTTPException(status_code=500, detail=f"Submission data is invalid: {e}")
    except (OSError, TransientInfraError) as e:
        raise HTTPException(status_code=502, detail=f"Failed to delete submission: {e}")
    return Response(status_code=204)


@app.post("/admin/submissions/{submission_id}/remind")
def remind_submission(
    submission_id: str,
    x_admin_email: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    try:
        reminder_count = services.actions.remind_submission(submission_id, x_admin_email)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GoneError as e:
        raise HTTPException(status_code=410, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message": "Reminder sent", "reminderCount": reminder_count}


@app.get("/objects/{key:path}")
def get_object(key: str, ttl: int, token: str, services: Services = Depends(get_services)):
    objects = services.objects
    try:
        path = objects.path_for(key)
        objects.verify(key, ttl, token)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Object not found")
    except BadSignature:
        raise HTTPException(status_code=403, detail="Link is invalid or has expired")
    if not path.is_file():
        raise HTTPException(status_code=410, detail="Object no longer exists")
    return FileResponse(path=str(path), filename=path.name)


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
