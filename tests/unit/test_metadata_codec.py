"""Unit tests for the scalar-only metadata codec used by ChromaDB."""

from __future__ import annotations

import pytest

from kb_ingest.providers.vector_store.metadata_codec import (
    JSON_KEYS_FIELD,
    decode_metadata,
    encode_metadata,
)


class TestEncodeMetadata:
    def test_scalars_pass_through(self) -> None:
        encoded = encode_metadata({"title": "a.pdf", "page": 3, "score": 0.5, "isActive": True})
        assert encoded == {"title": "a.pdf", "page": 3, "score": 0.5, "isActive": True}

    def test_lists_and_dicts_are_serialised_and_recorded(self) -> None:
        encoded = encode_metadata({"tags": ["faq", "退货"], "extra": {"b": 1, "a": 2}})

        assert encoded["tags"] == '["faq", "退货"]'
        assert encoded["extra"] == '{"a": 2, "b": 1}'
        assert encoded[JSON_KEYS_FIELD] == "extra,tags"

    def test_none_values_dropped(self) -> None:
        assert encode_metadata({"fileUrl": None, "page": 1}) == {"page": 1}

    def test_reserved_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            encode_metadata({JSON_KEYS_FIELD: "x"})

    def test_unserialisable_value_rejected(self) -> None:
        with pytest.raises(ValueError):
            encode_metadata({"bad": {1, 2}})


class TestDecodeMetadata:
    def test_inverts_encode(self) -> None:
        original = {"title": "t", "tags": ["a", "b"], "nested": {"k": [1, 2]}, "page": 2}
        assert decode_metadata(encode_metadata(original)) == original

    def test_bracketed_string_is_not_parsed(self) -> None:
        original = {"title": "[File: scan.pdf]", "note": "{not json}"}
        assert decode_metadata(encode_metadata(original)) == original

    def test_empty_and_none(self) -> None:
        assert decode_metadata(None) == {}
        assert decode_metadata({}) == {}

    def test_corrupt_json_value_left_as_string(self) -> None:
        decoded = decode_metadata({"tags": "[broken", JSON_KEYS_FIELD: "tags"})
        assert decoded == {"tags": "[broken"}
