from models.base import Base
from models.crawl_job import CrawlJob
from models.scheduled_job import ScheduledJob
from models.event import Event

__all__ = [
    "Base",
    "CrawlJob",
    "ScheduledJob",
    "Event",
]
