"""
Balance Monitor Tests
---------------------
Request shape, response parsing and the typed failure contract.
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from doughbot.balance.monitor import BalanceMonitor, parse_balance
from doughbot.core.config import BalanceConfig
from doughbot.core.exceptions import BalanceFetchError
from tests.conftest import FAST_RETRY


def make_response(status_code=200, body=None, json_error=False):
    response = Mock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body
    return response


def make_monitor(responses, field="balance"):
    session = requests.Session()
    session.get = Mock(side_effect=responses)
    config = BalanceConfig(base_url="https://bank.example/", field=field, timeout_seconds=3)
    return BalanceMonitor(config, api_token="secret-token", retry_policy=FAST_RETRY, session=session)


class TestRequest:

    def test_request_targets_endpoint_with_bearer_token(self):
        monitor = make_monitor([make_response(body={"balance": 42})])

        monitor.fetch()

        monitor.session.get.assert_called_once_with(
            "https://bank.example/api/v1/account-balances", timeout=3
        )
        assert monitor.session.headers["Authorization"] == "Bearer secret-token"
        assert monitor.session.headers["Accept"] == "application/json"


class TestParsing:

    def test_numeric_field_becomes_decimal(self):
        monitor = make_monitor([make_response(body={"balance": "123.45"})])

        reading = monitor.fetch()

        assert reading.value == Decimal("123.45")
        assert reading.timestamp.tzinfo is not None

    def test_nested_path_with_list_index(self):
        body = {"data": [{"currency": "eur", "amount": 99.5}]}

        assert parse_balance(body, "data.0.amount") == Decimal("99.5")

    @pytest.mark.parametrize("body", [
        {"other": 1},
        {"balance": None},
        {"balance": "lots"},
        {"balance": True},
        {"balance": {"value": 1}},
        {"balance": "NaN"},
        [],
    ])
    def test_unusable_body_is_fetch_error(self, body):
        monitor = make_monitor([make_response(body=body)])

        with pytest.raises(BalanceFetchError):
            monitor.fetch()

        assert monitor.session.get.call_count == 1

    def test_non_json_body_is_fetch_error(self):
        monitor = make_monitor([make_response(json_error=True)])

        with pytest.raises(BalanceFetchError, match="non-JSON"):
            monitor.fetch()


class TestFailures:

    def test_client_error_is_not_retried(self):
        monitor = make_monitor([make_response(status_code=401)])

        with pytest.raises(BalanceFetchError) as exc_info:
            monitor.fetch()

        assert exc_info.value.status_code == 401
        assert monitor.session.get.call_count == 1

    def test_server_errors_are_retried_then_succeed(self):
        monitor = make_monitor([
            make_response(status_code=503),
            requests.ConnectionError("reset"),
            make_response(body={"balance": 7}),
        ])

        reading = monitor.fetch()

        assert reading.value == Decimal("7")
        assert monitor.session.get.call_count == 3

    def test_exhausted_retries_surface_fetch_error(self):
        monitor = make_monitor([requests.Timeout("slow")] * FAST_RETRY.max_attempts)

        with pytest.raises(BalanceFetchError, match="unreachable"):
            monitor.fetch()

        assert monitor.session.get.call_count == FAST_RETRY.max_attempts
