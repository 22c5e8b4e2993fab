from typing import Optional

import httpx

from config import Settings, settings as default_settings
from biblioteca.auth import CredentialVerifier
from biblioteca.database import LocalStore
from biblioteca.loans import LoanManager
from biblioteca.services.gateways import AuthorGateway, BookGateway, LoanGateway, ReturnGateway
from biblioteca.services.http_client import ApiClient
from biblioteca.services.reports import ReportGateway
from biblioteca.services.users import UserGateway
from biblioteca.session import SessionStore


class LibraryContext:
    """Owns one API client, the local store and every component built on them.

    Anything that needs the session, a gateway or the loan manager receives
    this object instead of reaching for module-level state.
    """

    def __init__(self, settings: Settings = default_settings, store: Optional[LocalStore] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 base_url: Optional[str] = None) -> None:
        self.settings = settings
        self.client = ApiClient(base_url=base_url or settings.api_base_url,
                                timeout=settings.api_timeout, transport=transport)
        self.store = store or LocalStore(settings.local_store_file)

        self.authors = AuthorGateway(self.client)
        self.books = BookGateway(self.client)
        self.users = UserGateway(self.client, self.store)
        self.loans = LoanGateway(self.client)
        self.returns = ReturnGateway(self.client)
        self.reports = ReportGateway(self.client)

        self.session = SessionStore(self.store, self.users, settings)
        self.verifier = CredentialVerifier(self.session, self.users, settings)
        self.loan_manager = LoanManager(self.loans, self.returns, self.store, settings)

    async def close(self) -> None:
        await self.client.close()

    async def __aenter__(self) -> "LibraryContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
