"""Dependency injection singletons for Membership-Engine."""

from membership_engine.accounts.service import AccountService
from membership_engine.billing.catalog import CatalogService
from membership_engine.billing.confirmation import CheckoutConfirmationReconciler
from membership_engine.billing.customers import CustomerService
from membership_engine.billing.dispatcher import WebhookDispatcher
from membership_engine.billing.ledger import EventLedger
from membership_engine.billing.notifications import BillingNotifier
from membership_engine.billing.provider import BillingProvider, StripeProvider
from membership_engine.billing.service import WebhookIngestService
from membership_engine.billing.synchronizer import EntitlementSynchronizer
from membership_engine.common.config import get_settings
from membership_engine.common.database import DatabaseManager

_db: DatabaseManager | None = None
_provider: BillingProvider | None = None
_accounts: AccountService | None = None
_ledger: EventLedger | None = None
_synchronizer: EntitlementSynchronizer | None = None
_catalog: CatalogService | None = None
_customers: CustomerService | None = None
_notifier: BillingNotifier | None = None
_dispatcher: WebhookDispatcher | None = None
_ingest: WebhookIngestService | None = None
_confirmation: CheckoutConfirmationReconciler | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_provider() -> BillingProvider:
    global _provider
    if _provider is None:
        settings = get_settings()
        _provider = StripeProvider(
            settings.stripe_secret_key,
            timeout=settings.provider_timeout_seconds,
        )
    return _provider


def set_provider(provider: BillingProvider) -> None:
    """Install a specific provider client (tests, alternative gateways)."""
    global _provider
    _provider = provider


def get_account_service() -> AccountService:
    global _accounts
    if _accounts is None:
        _accounts = AccountService()
    return _accounts


def get_ledger() -> EventLedger:
    global _ledger
    if _ledger is None:
        _ledger = EventLedger(get_settings())
    return _ledger


def get_synchronizer() -> EntitlementSynchronizer:
    global _synchronizer
    if _synchronizer is None:
        _synchronizer = EntitlementSynchronizer()
    return _synchronizer


def get_catalog_service() -> CatalogService:
    global _catalog
    if _catalog is None:
        _catalog = CatalogService(get_provider())
    return _catalog


def get_customer_service() -> CustomerService:
    global _customers
    if _customers is None:
        _customers = CustomerService(
            get_settings(), get_provider(),
            accounts=get_account_service(),
            catalog=get_catalog_service(),
        )
    return _customers


def get_notifier() -> BillingNotifier:
    global _notifier
    if _notifier is None:
        settings = get_settings()
        _notifier = BillingNotifier(
            provider=settings.email_provider,
            api_key=settings.email_api_key,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
        )
    return _notifier


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher(
            get_settings(), get_provider(),
            synchronizer=get_synchronizer(),
            customers=get_customer_service(),
            notifier=get_notifier(),
        )
    return _dispatcher


def get_ingest_service() -> WebhookIngestService:
    global _ingest
    if _ingest is None:
        _ingest = WebhookIngestService(
            get_settings(), get_db(),
            ledger=get_ledger(),
            dispatcher=get_dispatcher(),
            provider=get_provider(),
        )
    return _ingest


def get_confirmation_service() -> CheckoutConfirmationReconciler:
    global _confirmation
    if _confirmation is None:
        _confirmation = CheckoutConfirmationReconciler(
            get_provider(),
            synchronizer=get_synchronizer(),
            customers=get_customer_service(),
        )
    return _confirmation


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _provider, _accounts, _ledger, _synchronizer, _catalog
    global _customers, _notifier, _dispatcher, _ingest, _confirmation
    _db = None
    _provider = None
    _accounts = None
    _ledger = None
    _synchronizer = None
    _catalog = None
    _customers = None
    _notifier = None
    _dispatcher = None
    _ingest = None
    _confirmation = None
