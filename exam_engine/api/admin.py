from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from rq import Queue
from sqlalchemy.orm import Session

from exam_engine.api.applications import ApplicationOut
from exam_engine.api.deps import get_application_service, get_config_service
from exam_engine.core.auth import TokenData, require_roles
from exam_engine.core.database import get_db
from exam_engine.jobs.expiry_job import expire_attempts_job
from exam_engine.jobs.queue import get_queue
from exam_engine.services.admission import ApplicationService
from exam_engine.services.system_config import ConfigService

router = APIRouter()


class EnqueueResponse(BaseModel):
    job_id: str
    status: str

class ConfigValue(BaseModel):
    value: Any

class ConfigEntry(BaseModel):
    key: str
    value: Any


@router.post("/applications/{application_id}/admit", response_model=ApplicationOut)
def admit_application(application_id: str, user: TokenData = Depends(require_roles("admin")),
                      db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    return service.admit(db, application_id, actor=user.sub)

@router.post("/attempts/expire", response_model=EnqueueResponse, status_code=202,
             dependencies=[Depends(require_roles("admin"))])
def enqueue_expiry_sweep(queue: Queue = Depends(get_queue)):
    job = queue.enqueue(expire_attempts_job, job_timeout=600)
    return EnqueueResponse(job_id=job.id, status="queued")

@router.get("/config/{key}", response_model=ConfigEntry, dependencies=[Depends(require_roles("admin"))])
def read_config(key: str, config: ConfigService = Depends(get_config_service)):
    return ConfigEntry(key=key, value=config.get(key))

@router.put("/config/{key}", response_model=ConfigEntry, dependencies=[Depends(require_roles("admin"))])
def update_config(key: str, payload: ConfigValue, config: ConfigService = Depends(get_config_service)):
    config.set(key, payload.value)
    return ConfigEntry(key=key, value=config.get(key))
