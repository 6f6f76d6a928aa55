"""
Tests for Ark error parsing.
"""

from __future__ import annotations

import json

from arkwallet.providers.errors import (
    ArkError,
    ProviderError,
    is_duplicate_intent_error,
    maybe_ark_error,
)


def _body(name: str = "DUPLICATED_INPUT", message: str = "duplicated input") -> str:
    return json.dumps(
        {
            "code": 3,
            "message": message,
            "details": [
                {
                    "@type": "type.googleapis.com/ark.v1.ErrorDetails",
                    "code": 11,
                    "name": name,
                    "message": message,
                    "metadata": {"outpoint": "aa:0"},
                }
            ],
        }
    )


class TestMaybeArkError:
    def test_parses_error_details(self) -> None:
        error = maybe_ark_error(_body())
        assert isinstance(error, ArkError)
        assert error.code == 11
        assert error.name == "DUPLICATED_INPUT"
        assert error.metadata == {"outpoint": "aa:0"}

    def test_from_provider_error_body(self) -> None:
        error = ProviderError("failed", status_code=400, body=_body("INVALID_PSBT", "bad psbt"))
        parsed = maybe_ark_error(error)
        assert parsed is not None
        assert parsed.name == "INVALID_PSBT"

    def test_provider_error_keeps_parsed_error(self) -> None:
        ark_error = ArkError(1, "boom", "INTERNAL")
        assert maybe_ark_error(ProviderError("x", ark_error=ark_error)) is ark_error

    def test_not_json(self) -> None:
        assert maybe_ark_error("connection refused") is None

    def test_without_details(self) -> None:
        assert maybe_ark_error({"code": 2, "message": "unknown"}) is None

    def test_wrong_detail_type(self) -> None:
        body = {"details": [{"@type": "type.googleapis.com/other", "code": 1}]}
        assert maybe_ark_error(body) is None

    def test_incomplete_detail(self) -> None:
        body = {"details": [{"@type": "type.googleapis.com/ark.v1.ErrorDetails", "code": 1}]}
        assert maybe_ark_error(body) is None


class TestDuplicateIntent:
    def test_by_name(self) -> None:
        error = ProviderError("failed", status_code=400, body=_body(message="rejected"))
        assert is_duplicate_intent_error(error)

    def test_by_message(self) -> None:
        error = ProviderError("failed", body="intent already registered for input")
        assert is_duplicate_intent_error(error)

    def test_other_error(self) -> None:
        error = ProviderError("failed", body=_body("INVALID_PSBT", "bad psbt"))
        assert not is_duplicate_intent_error(error)
