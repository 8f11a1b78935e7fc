import logging
from rq import Worker
from exam_engine.core.config import settings
from exam_engine.jobs.queue import get_redis

if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    w = Worker([settings.RQ_QUEUE], connection=get_redis())
    w.work(with_scheduler=True)
