# mapbackend/services/supabase_service.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _default_factory(url: str, key: str) -> Any:
    # Import here so tests that inject a fake never need the real client.
    from supabase import create_client

    return create_client(url, key)


class SupabaseClients:
    """
    Two lazily-created store clients:
      - public: anon key, subject to the store's row-level policies
      - elevated: service-role key, bypasses them

    Credentials are checked on construction; clients are created on first use.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_role_key: str,
        factory: Optional[Callable[[str, str], Any]] = None,
    ):
        missing = [
            name
            for name, val in (
                ("SUPABASE_URL", url),
                ("SUPABASE_ANON_KEY", anon_key),
                ("SUPABASE_SERVICE_ROLE_KEY", service_role_key),
            )
            if not val
        ]
        if missing:
            raise RuntimeError(
                "Supabase credentials missing: "
                + ", ".join(missing)
                + ". Set them in environment or .env at the repo root."
            )
        self._url = url
        self._anon_key = anon_key
        self._service_key = service_role_key
        self._factory = factory or _default_factory
        self._public: Any = None
        self._elevated: Any = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, factory=None) -> "SupabaseClients":
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            settings.supabase_service_role_key,
            factory=factory,
        )

    @property
    def public(self) -> Any:
        with self._lock:
            if self._public is None:
                self._public = self._factory(self._url, self._anon_key)
            return self._public

    @property
    def elevated(self) -> Any:
        with self._lock:
            if self._elevated is None:
                logger.info("creating elevated store client")
                self._elevated = self._factory(self._url, self._service_key)
            return self._elevated

    def for_credential(self, elevated: bool) -> Any:
        return self.elevated if elevated else self.public
