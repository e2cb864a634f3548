"""Tests for the OAuth anti-CSRF state guard."""

import base64

import pytest

from sessionguard.service.oauth_state import OAuthStateGuard


@pytest.fixture
def guard():
    return OAuthStateGuard()


class TestGenerate:
    def test_state_is_32_random_bytes_urlsafe(self, guard):
        state = guard.generate()

        assert "=" not in state
        assert len(base64.urlsafe_b64decode(state + "=" * (-len(state) % 4))) == 32

    def test_states_do_not_repeat(self, guard):
        assert len({guard.generate() for _ in range(50)}) == 50


class TestIsValid:
    def test_same_value_is_valid(self, guard):
        state = guard.generate()
        assert guard.is_valid(state, state) is True

    def test_different_values_invalid(self, guard):
        assert guard.is_valid(guard.generate(), guard.generate()) is False
        assert guard.is_valid("abc", "abcd") is False

    @pytest.mark.parametrize(
        "expected,actual",
        [(None, "abc"), ("abc", None), (None, None), ("", "abc"), ("abc", ""), ("   ", "   ")],
    )
    def test_blank_or_missing_invalid(self, guard, expected, actual):
        assert guard.is_valid(expected, actual) is False

    def test_non_ascii_compares_by_bytes(self, guard):
        assert guard.is_valid("état", "état") is True
        assert guard.is_valid("état", "etat") is False
