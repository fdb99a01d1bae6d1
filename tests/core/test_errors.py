"""Tests for fabric_deploy.core.errors: hierarchy, context and classification."""

from __future__ import annotations

import pytest

from fabric_deploy.core.errors import (
    AlreadyExistsError,
    AuthenticationError,
    AuthResolutionError,
    ConfigError,
    DeployError,
    ErrorCategory,
    ErrorClass,
    InvalidDefinitionError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    RunCancelledError,
    ServiceUnavailableError,
    StrategyFailure,
    StrategyFailureClass,
    TimeoutError as DeployTimeoutError,
    TopologyError,
    classify_error,
    get_retry_after,
    is_retryable,
)


class TestDeployError:
    def test_defaults(self):
        err = DeployError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.retry_after is None

    def test_cause_is_chained(self):
        root = ConnectionError("dns")
        err = NetworkError("unreachable", cause=root)
        assert err.__cause__ is root
        assert err.to_dict()["cause"] == "dns"

    def test_with_context_known_and_metadata_fields(self):
        err = InvalidDefinitionError("bad").with_context(resource_kind="Table", column="Body")
        d = err.to_dict()
        assert d["context"]["resource_kind"] == "Table"
        assert d["context"]["column"] == "Body"
        assert d["error_type"] == "InvalidDefinitionError"

    def test_to_dict_omits_empty_context(self):
        assert "context" not in DeployError("x").to_dict()


class TestRetryability:
    @pytest.mark.parametrize(
        "error",
        [NetworkError("n"), DeployTimeoutError("t"), RateLimitError(), ServiceUnavailableError("s")],
    )
    def test_transient_errors_are_retryable(self, error):
        assert is_retryable(error)
        assert classify_error(error) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [PermissionDeniedError("p"), InvalidDefinitionError("i"), ConfigError("c"), ValueError("v")],
    )
    def test_fatal_errors_are_not_retryable(self, error):
        assert not is_retryable(error)
        assert classify_error(error) == ErrorClass.FATAL

    def test_builtin_connection_error_is_retryable(self):
        assert is_retryable(ConnectionError("reset"))

    def test_retry_after(self):
        assert get_retry_after(RateLimitError(retry_after=12)) == 12
        assert get_retry_after(RateLimitError()) is None
        assert get_retry_after(ValueError()) is None


class TestClassification:
    def test_auth(self):
        assert classify_error(AuthenticationError("401")) == ErrorClass.AUTH

    def test_already_exists(self):
        err = AlreadyExistsError("dup", resource_id="abc")
        assert classify_error(err) == ErrorClass.ALREADY_EXISTS
        assert err.resource_id == "abc"
        assert err.category == ErrorCategory.CONFLICT

    def test_cancelled(self):
        assert classify_error(RunCancelledError("sigint")) == ErrorClass.CANCELLED

    def test_topology_error_is_config(self):
        assert isinstance(TopologyError("bad tree"), ConfigError)


class TestAuthResolutionError:
    def test_message_lists_every_failure(self):
        failures = [
            StrategyFailure("CachedToken", StrategyFailureClass.NOT_CONFIGURED, "no token"),
            StrategyFailure("DelegatedExchange", StrategyFailureClass.UNAVAILABLE, "az missing"),
        ]
        err = AuthResolutionError(failures)
        assert "CachedToken: NotConfigured (no token)" in err.message
        assert "DelegatedExchange: Unavailable (az missing)" in err.message
        assert [f["class"] for f in err.to_dict()["failures"]] == ["NotConfigured", "Unavailable"]

    def test_empty_chain(self):
        assert "No authentication strategy is enabled" in AuthResolutionError([]).message
