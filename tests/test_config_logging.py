#!/usr/bin/env python3
"""
Config parsing, error classification and structured logging helpers.
"""
import json
import logging
import os

import httpx
import pytest

from pnl_indexer.core import config
from pnl_indexer.core.config import (
    TokenConfig,
    load_env_file,
    parse_rpc_providers,
    parse_tracked_tokens,
    require_settings,
)
from pnl_indexer.core.errors import (
    AuthError,
    ConfigError,
    IndexerError,
    QueryError,
    RateLimitError,
    TransientError,
    classify_error,
)
from pnl_indexer.core.logger import SUCCESS, JSONFormatter, LogBuffer, attach_log_buffer, log_event


def test_parse_tracked_tokens():
    tokens = parse_tracked_tokens("0xABC:BT:18, 0xdef::6 ,0x123")
    assert tokens == [
        TokenConfig("0xabc", "BT", 18),
        TokenConfig("0xdef", None, 6),
        TokenConfig("0x123", None, None),
    ]
    assert parse_tracked_tokens("") == []

    with pytest.raises(ConfigError):
        parse_tracked_tokens("0xabc:BT:eighteen")


def test_parse_rpc_providers_appends_public_fallback():
    providers = parse_rpc_providers(
        "alchemy=https://base.g.alchemy.com/v2/key, https://quick.example",
        "https://mainnet.base.org",
    )
    assert providers == [
        ("alchemy", "https://base.g.alchemy.com/v2/key"),
        ("rpc-1", "https://quick.example"),
        ("public", "https://mainnet.base.org"),
    ]
    assert parse_rpc_providers("public=https://mainnet.base.org", "https://mainnet.base.org") == [
        ("public", "https://mainnet.base.org"),
    ]


def test_load_env_file_does_not_override(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text('# comment\nPNL_TEST_A="one"\nPNL_TEST_B=two\nnot a pair\n')
    monkeypatch.setenv("PNL_TEST_B", "kept")
    monkeypatch.delenv("PNL_TEST_A", raising=False)

    assert load_env_file(str(env)) is True
    assert os.environ["PNL_TEST_A"] == "one"
    assert os.environ["PNL_TEST_B"] == "kept"
    monkeypatch.delenv("PNL_TEST_A")

    assert load_env_file(str(tmp_path / "missing")) is False


def test_require_settings():
    with pytest.raises(ConfigError):
        require_settings(api_key="", tracked_tokens=[TokenConfig("0xabc")])
    with pytest.raises(ConfigError):
        require_settings(api_key="key", tracked_tokens=[])
    require_settings(api_key="key", tracked_tokens=[TokenConfig("0xabc")])


def _status_error(status):
    request = httpx.Request("POST", "https://upstream.example")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(status, request=request))


def test_classify_error():
    assert isinstance(classify_error(_status_error(401)), AuthError)
    assert isinstance(classify_error(_status_error(403)), AuthError)
    assert isinstance(classify_error(_status_error(429)), RateLimitError)
    assert isinstance(classify_error(_status_error(502)), TransientError)
    assert isinstance(classify_error(_status_error(400)), QueryError)
    assert isinstance(classify_error(httpx.ReadTimeout("slow")), TransientError)
    assert isinstance(classify_error(ValueError("compute units per second exceeded")), RateLimitError)
    assert type(classify_error(ValueError("weird"))) is IndexerError

    original = QueryError("bad query")
    assert classify_error(original) is original
    assert RateLimitError("x").retryable and not AuthError("x").retryable


def test_log_buffer_ring_and_levels():
    buffer = attach_log_buffer(LogBuffer(max_entries=3), name="pnl_indexer.test_ring")
    log = logging.getLogger("pnl_indexer.test_ring.child")

    log.info("one", extra={"token": "0xabc"})
    log.log(SUCCESS, "two")
    log.warning("three")
    log.error("four")
    log.debug("ignored")

    entries = buffer.entries()
    assert [e["message"] for e in entries] == ["two", "three", "four"]
    assert [e["level"] for e in entries] == ["success", "warn", "error"]
    assert buffer.entries(limit=1)[0]["message"] == "four"
    assert buffer.entries(limit=0) == []
    assert buffer.since(entries[0]["timestamp"]) == [e for e in entries if e["timestamp"] > entries[0]["timestamp"]]

    buffer.clear()
    assert len(buffer) == 0
    logging.getLogger("pnl_indexer.test_ring").removeHandler(buffer)


def test_log_event_and_json_formatter():
    records = []

    class Capture(logging.Handler):
        def emit(self, record):
            records.append(record)

    logger = logging.getLogger("pnl_indexer.test_events")
    logger.setLevel(logging.INFO)
    handler = Capture()
    logger.addHandler(handler)
    try:
        log_event(logger, "token_sync", {"token": "0xabc", "trades_found": 3})
    finally:
        logger.removeHandler(handler)

    record, = records
    assert record.event == "token_sync"
    assert record.token == "0xabc"
    formatted = json.loads(JSONFormatter().format(record))
    assert formatted["event"] == "token_sync"
    assert formatted["token"] == "0xabc"
    assert json.loads(formatted["message"])["trades_found"] == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
