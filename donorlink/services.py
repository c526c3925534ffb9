from donorlink.blood_requests import BloodRequestService
from donorlink.config import Settings
from donorlink.database import Database, load_sample_data
from donorlink.matching import MatchingService
from donorlink.offers import OfferLifecycle
from donorlink.realtime import RealtimeCoordinator
from donorlink.sessions import SessionGuard


class Services:
    """The core components wired to one database and one coordinator."""

    def __init__(self, settings: Settings | None = None, db: Database | None = None) -> None:
        self.settings = settings or Settings()
        self.db = db or Database(latency=self.settings.store_latency_seconds)
        self.coordinator = RealtimeCoordinator(
            self.db.messages, typing_timeout=self.settings.typing_timeout_seconds
        )
        self.matching = MatchingService(
            self.db.requests, self.db.users, self.settings, self.coordinator
        )
        self.offers = OfferLifecycle(self.db.offers, self.db.requests, self.coordinator)
        self.requests = BloodRequestService(self.db.requests, self.coordinator)
        self.sessions = SessionGuard(
            self.coordinator, window_seconds=self.settings.session_window_seconds
        )
        if self.settings.load_sample_data:
            load_sample_data(self.db)


_services: Services | None = None


def get_services() -> Services:
    """Get the global service container."""
    global _services
    if _services is None:
        _services = Services(Settings.from_env())
    return _services
