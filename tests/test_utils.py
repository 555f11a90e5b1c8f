"""Tests for configuration loading, JSON cleanup and date parsing."""

import json
import os
from datetime import date
from unittest.mock import patch

import pytest

from context_graph.utils.config import load_config
from context_graph.utils.json_utils import clean_json_response, parse_json_object
from context_graph.utils.timestamp_utils import age_in_days, parse_date


class TestLoadConfig:
    def test_environment_overrides(self):
        env = {
            'GRAPH_DEFAULT_DEPTH': '4',
            'DECAY_ARCHIVE_THRESHOLD': '45',
            'DECAY_SCHEDULER_ENABLED': 'Yes',
            'DEBATE_JUDGE_MODE': ' LLM ',
            'REMEDIATION_TOP_K': '9',
        }
        with patch.dict(os.environ, env):
            loaded = load_config()

        assert loaded.graph.default_depth == 4
        assert loaded.decay.archive_threshold == 45
        assert loaded.decay.scheduler_enabled is True
        assert loaded.debate.judge_mode == 'llm'
        assert loaded.remediation.top_k == 9

    def test_scheduler_disabled_by_default(self):
        with patch.dict(os.environ, {}, clear=True):
            loaded = load_config()

        assert loaded.decay.scheduler_enabled is False
        assert loaded.decay.archive_threshold == 30
        assert loaded.debate.judge_threshold == 3


class TestJsonUtils:
    def test_strips_fences_and_prose(self):
        raw = 'Here you go:\n```json\n{"score": 4}\n```'

        assert json.loads(clean_json_response(raw)) == {'score': 4}

    def test_rejects_non_objects(self):
        with pytest.raises(ValueError):
            parse_json_object('[1, 2]')
        with pytest.raises(ValueError):
            parse_json_object('no json here')


class TestParseDate:
    @pytest.mark.parametrize('value, expected', [
        ('2024-03-01', date(2024, 3, 1)),
        ('2024-03-01T23:59:00Z', date(2024, 3, 1)),
        (date(2024, 3, 1), date(2024, 3, 1)),
        ('', None),
        (None, None),
    ])
    def test_accepted_forms(self, value, expected):
        assert parse_date(value) == expected

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_date('03/01/2024')

    def test_age_in_days(self):
        assert age_in_days(date(2024, 1, 1), today=date(2024, 1, 31)) == 30
