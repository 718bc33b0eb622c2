from __future__ import annotations

from redis import Redis
from rq import Worker

from surveymark.infrastructure.config import get_settings
from surveymark.infrastructure.logging import get_logger

logger = get_logger("scripts.run_worker")


def main() -> None:
    config = get_settings().queue
    connection = Redis.from_url(config.redis_url)
    logger.info(f"Starting rq worker on queue '{config.queue_name}'")
    Worker([config.queue_name], connection=connection).work(with_scheduler=False)


if __name__ == "__main__":
    main()
