from __future__ import annotations

import pytest

from rankwatch.catalog.models import Brand
from rankwatch.catalog.store import CatalogStore
from rankwatch.db.session import create_engine_from_env
from rankwatch.db.tables import metadata
from rankwatch.errors import TelegramError
from rankwatch.scheduling.settings import SettingsRepository
from rankwatch.serp.client import SerpResult
from rankwatch.serp.credentials import CredentialStore


@pytest.fixture(autouse=True)
def _environment(monkeypatch):
    monkeypatch.setenv("TIMEZONE", "Asia/Jakarta")
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("SERP_API_KEYS", raising=False)


@pytest.fixture()
def engine(tmp_path):
    # File-backed so executor threads share one database.
    engine = create_engine_from_env(f"sqlite:///{tmp_path / 'rankwatch.db'}")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    catalog = CatalogStore(engine)
    tokoku = catalog.upsert_brand(Brand(id=None, code="TOKOKU", name="Tokoku", query="tokoku official"))
    catalog.add_domain(tokoku, "TOKOKU", "tokoku.co.id")
    catalog.add_domain(tokoku, "TOKOKU", "shop.tokoku.co.id")
    kopi = catalog.upsert_brand(Brand(id=None, code="KOPIRAYA", name="Kopi Raya"))
    catalog.add_domain(kopi, "KOPIRAYA", "https://www.kopiraya.com/")
    sepatu = catalog.upsert_brand(Brand(id=None, code="SEPATU", name="Sepatu Lari"))
    catalog.add_domain(sepatu, "SEPATU", "sepatu")
    credentials = CredentialStore(engine)
    credentials.insert("primary", "key-primary-0001")
    credentials.insert("backup", "key-backup-0002")
    return engine


@pytest.fixture()
def configure_settings(engine):
    repository = SettingsRepository(engine)

    def configure(**values):
        def mutate(settings):
            for name, value in values.items():
                setattr(settings, name, value)

        return repository.update(mutate)

    return configure


class DummySerpClient:
    """Answers queries from a dict of query text to results or an exception."""

    def __init__(self, responses=None, default=None):
        self.responses = responses or {}
        self.default = default if default is not None else []
        self.calls = []

    async def query(self, credential, query_text, locale=None, *, num=10):
        self.calls.append((credential.name, query_text))
        outcome = self.responses.get(query_text, self.default)
        if callable(outcome):
            outcome = outcome(credential)
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    async def close(self):
        pass


class DummyChannel:
    def __init__(self, *, fail_text=(), fail_documents=()):
        self.fail_text = set(fail_text)
        self.fail_documents = set(fail_documents)
        self.texts = []
        self.documents = []
        self.closed = False

    async def send_text(self, target, text):
        if target in self.fail_text:
            raise TelegramError("chat not found", target=target)
        self.texts.append((target, text))

    async def send_document(self, target, filename, content, caption=""):
        if target in self.fail_documents:
            raise TelegramError("Request Entity Too Large", target=target)
        self.documents.append((target, filename, content, caption))

    async def test_targets(self, targets, text):
        from rankwatch.notify.telegram import DeliveryReport, TargetResult

        report = DeliveryReport()
        for target in targets:
            try:
                await self.send_text(target, text)
            except TelegramError as exc:
                report.results.append(TargetResult(target=target, ok=False, error=str(exc)))
            else:
                report.results.append(TargetResult(target=target, ok=True))
        return report

    async def close(self):
        self.closed = True


def results_for(*links):
    return [SerpResult(rank=index, title=f"Result {index}", link=link) for index, link in enumerate(links, start=1)]
