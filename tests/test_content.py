"""
Tests for common content normalization.
"""

from promptloop.content import (
    compress_content,
    normalize_content,
    normalize_source,
    parse_data_uri,
    source_to_url,
    text_of,
)

# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class TestNormalizeSource:
    def test_data_uri_becomes_base64_source(self):
        assert normalize_source("data:image/png;base64,AAAA") == {
            "type": "base64",
            "media_type": "image/png",
            "data": "AAAA",
        }

    def test_plain_string_is_url(self):
        assert normalize_source("https://x/y.png") == {"type": "url", "url": "https://x/y.png"}

    def test_unparseable_data_uri_falls_back_to_url(self):
        assert parse_data_uri("data:broken") == {"type": "url", "url": "data:broken"}

    def test_preformed_base64_mapping(self):
        source = normalize_source({"data": "AAAA", "media_type": "application/pdf"})
        assert source == {"type": "base64", "data": "AAAA", "media_type": "application/pdf"}

    def test_source_to_url_round_trip(self):
        source = normalize_source("data:image/jpeg;base64,QUJD")
        assert source_to_url(source) == "data:image/jpeg;base64,QUJD"
        assert source_to_url({"type": "url", "url": "https://a/b"}) == "https://a/b"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TestNormalizeContent:
    def test_string_becomes_text_block(self):
        assert normalize_content("hi") == [{"type": "text", "text": "hi"}]

    def test_none_is_empty(self):
        assert normalize_content(None) == []

    def test_multi_key_mapping_in_fixed_order(self):
        blocks = normalize_content({"image": "https://x/y.png", "text": "Describe"})
        assert [b["type"] for b in blocks] == ["text", "image"]
        assert blocks[1]["source"] == {"type": "url", "url": "https://x/y.png"}

    def test_document_block(self):
        blocks = normalize_content({"document": "data:application/pdf;base64,JVBE"})
        assert blocks == [
            {
                "type": "document",
                "source": {"type": "base64", "media_type": "application/pdf", "data": "JVBE"},
            }
        ]

    def test_mixed_list(self):
        blocks = normalize_content(["one", {"text": "two"}, {"image": "https://i"}])
        assert [b["type"] for b in blocks] == ["text", "text", "image"]

    def test_tool_shapes_are_tagged(self):
        blocks = normalize_content(
            [
                {"tool_use_id": "call_1", "content": "42"},
                {"id": "call_2", "name": "add", "input": {"a": 1}},
            ]
        )
        assert blocks[0]["type"] == "tool_result"
        assert blocks[1]["type"] == "tool_use"

    def test_idempotent(self):
        raw = ["a", {"text": "b", "image": "data:image/png;base64,AAAA"}, {"document": "https://d"}]
        once = normalize_content(raw)
        assert normalize_content(once) == once


class TestCompressAndText:
    def test_single_text_block_compresses_to_string(self):
        assert compress_content([{"type": "text", "text": "hello"}]) == "hello"

    def test_multiple_blocks_are_kept(self):
        blocks = [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]
        assert compress_content(blocks) == blocks

    def test_text_block_with_extra_keys_is_kept(self):
        blocks = [{"type": "text", "text": "a", "cache_control": {"type": "ephemeral"}}]
        assert compress_content(blocks) == blocks

    def test_text_of_joins_blocks(self):
        assert text_of([{"type": "text", "text": "a"}, {"type": "image"}, "b"]) == "ab"
        assert text_of(None) == ""
