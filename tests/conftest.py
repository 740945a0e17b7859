import asyncio
import json
import time
from contextlib import asynccontextmanager

import pytest

from lifeledger.config import load_settings
from lifeledger.db import make_engine, ensure_schema
from lifeledger.llm.base import ExtractionGateway


@pytest.fixture(autouse=True)
def temp_config(tmp_path, monkeypatch):
    data_dir = tmp_path / "Ledger"
    inbox_dir = data_dir / "inbox"
    archive_dir = data_dir / "archive"
    reports_dir = data_dir / "reports"
    for d in (data_dir / ".lifeledger", inbox_dir, archive_dir, reports_dir):
        d.mkdir(parents=True, exist_ok=True)

    cfg = (
        f"data_dir = \"{data_dir}\"\n"
        f"inbox_dir = \"{inbox_dir}\"\n"
        f"archive_dir = \"{archive_dir}\"\n"
        f"reports_dir = \"{reports_dir}\"\n"
        f"remote_allowed = false\n"
        f"llm_backend = \"local\"\n"
        f"request_timeout = 5.0\n"
        f"background_timeout = 5.0\n"
        f"schedule = {{ sweep_every_minutes = 30, resonance = \"02:00\", weekly_report = \"Sun 23:00\" }}\n"
    )
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text(cfg, encoding="utf-8")
    monkeypatch.setenv("LIFELEDGER_CONFIG", str(cfg_path))
    yield
    monkeypatch.delenv("LIFELEDGER_CONFIG", raising=False)


@pytest.fixture
def run_async():
    def _run(coro):
        return asyncio.run(coro)
    return _run


@pytest.fixture
def open_db():
    """`async with open_db() as sf:` gives a session factory on the temp DB."""
    @asynccontextmanager
    async def _open():
        s = load_settings()
        eng, sf = make_engine(s.db_path)
        await ensure_schema(eng)
        try:
            yield sf
        finally:
            await eng.dispose()
    return _open


class ScriptedGateway(ExtractionGateway):
    """
    Gateway with canned answers per mode. A value may be a str (returned),
    a dict (returned as JSON), an Exception (raised) or a callable (called
    with the mode's arguments). `delay` sleeps before answering.
    """

    def __init__(self, delay: float = 0.0, **answers):
        self.delay = delay
        self.answers = answers
        self.calls = []

    def _answer(self, mode, *args):
        self.calls.append((mode, args))
        if self.delay:
            time.sleep(self.delay)
        value = self.answers.get(mode, "{}")
        if isinstance(value, Exception):
            raise value
        if callable(value):
            value = value(*args)
        if isinstance(value, dict):
            value = json.dumps(value)
        return value

    def extract_entry(self, text, context):
        return self._answer("entry", text, context)

    def extract_chat(self, text, context):
        return self._answer("chat", text, context)

    def extract_document(self, text, file_name, context):
        return self._answer("document", text, file_name, context)

    def summarize_week(self, digest, persona, previous_report):
        return self._answer("week", digest, persona, previous_report)

    def compose_biography(self, material):
        return self._answer("biography", material)


@pytest.fixture
def scripted():
    return ScriptedGateway
