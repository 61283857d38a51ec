# logiyard/controller.py

import logging
from typing import Optional

from db.setup import initialize_db, make_engine, make_session_factory
from logiyard.bins import BinCapacityTracker
from logiyard.calculator import RateCalculator
from logiyard.config import Settings, settings as default_settings
from logiyard.directory import Directory
from logiyard.rates import RateRepository
from logiyard.storage import StorageBilling
from logiyard.zones import ZoneResolver

logger = logging.getLogger(__name__)


class YardMaster:
    """
    The warehouse control tower: one engine, one session factory, and the
    services built on them. Every instance owns its own connection setup,
    so tests and applications can run several side by side.
    """

    def __init__(self, database_url: Optional[str] = None, settings: Optional[Settings] = None,
                 engine=None, create_schema: bool = True, seed: bool = False):
        self.settings = settings or default_settings

        # 1. Database connection
        self.engine = engine or make_engine(
            database_url or self.settings.database_url,
            busy_timeout=self.settings.sqlite_busy_timeout_seconds,
        )
        if create_schema:
            initialize_db(self.engine, seed=seed)
        self.DBSession = make_session_factory(self.engine)

        # 2. Services
        self.directory = Directory(self.DBSession)
        self.zones = ZoneResolver(self.DBSession)
        self.rates = RateRepository(self.DBSession, self.settings)
        self.calculator = RateCalculator(self.DBSession, self.settings)
        self.storage = StorageBilling(self.DBSession, self.settings)
        self.bins = BinCapacityTracker(self.DBSession)

        logger.info("YardMaster ready on %s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()
