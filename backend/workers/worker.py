import logging

import redis
from rq import Queue, Worker

import models  # noqa: F401  (registers the tables the stage tasks touch)
from config import get_settings
from database import Base, engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    # The worker can come up before the API has created the schema.
    Base.metadata.create_all(bind=engine)

    conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.queue_name, connection=conn)
    logger.info("Stage worker consuming queue %r", settings.queue_name)
    Worker([queue], connection=conn).work(with_scheduler=True)


if __name__ == "__main__":
    main()
