"""
PropelAI Unit Tests: JSON Response Repair
=========================================
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from agents.integrations.json_repair import parse_json_response, repair_json, strip_code_fences


@pytest.mark.unit
class TestJsonRepair:
    """Recovering JSON from imperfect generation output"""

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_fenced_object(self):
        assert parse_json_response('```json\n{"score": 85}\n```') == {"score": 85}

    def test_preamble_is_skipped(self):
        """Chatter before the first bracket is ignored"""
        text = 'Here is the analysis you asked for:\n[{"id": "REQ-001"}]'
        assert parse_json_response(text) == [{"id": "REQ-001"}]

    def test_truncated_array_is_closed(self):
        assert parse_json_response('{"requirements": [1, 2') == {"requirements": [1, 2]}

    def test_truncated_string_value_is_dropped(self):
        """A half-written trailing pair is removed before closing"""
        text = '{"agency": "GSA", "title": "Cloud Oper'
        assert parse_json_response(text) == {"agency": "GSA"}

    def test_trailing_comma(self):
        assert parse_json_response('{"a": 1, "b": [true, false],') == {"a": 1, "b": [True, False]}

    def test_dangling_key(self):
        assert repair_json('{"a": 1, "b":') == '{"a": 1}'

    def test_nested_truncation(self):
        text = '{"volume_1": {"sections": [{"title": "Executive Summary", "page_allocation": 2}'
        assert parse_json_response(text) == {
            "volume_1": {"sections": [{"title": "Executive Summary", "page_allocation": 2}]}
        }

    def test_unparseable_returns_default(self):
        assert parse_json_response("no json here", default={}) == {}
        assert parse_json_response("", default=[]) == []
        assert parse_json_response("{{{", default=None) is None
