"""Tests for fabric_deploy.dataplane.kusto."""

from __future__ import annotations

import json

import httpx
import pytest

from fabric_deploy.core.errors import AuthenticationError, InvalidDefinitionError
from fabric_deploy.dataplane.kusto import KustoQueryClient, kql_identifier, kql_string, rows_from_v1

QUERY_URI = "https://trd-otel.z0.kusto.fabric.microsoft.com/"


class TestRowsFromV1:
    def test_primary_table(self):
        body = {
            "Tables": [
                {"Columns": [{"ColumnName": "A"}, {"ColumnName": "B"}], "Rows": [[1, "x"], [2, "y"]]},
                {"Columns": [{"ColumnName": "Ignored"}], "Rows": [[0]]},
            ]
        }
        assert rows_from_v1(body) == [{"A": 1, "B": "x"}, {"A": 2, "B": "y"}]

    def test_empty(self):
        assert rows_from_v1({}) == []


class TestKqlString:
    def test_escapes_quotes_and_backslashes(self):
        assert kql_string('a"b\\c') == '"a\\"b\\\\c"'


class TestKqlIdentifier:
    def test_plain_name(self):
        assert kql_identifier("OTELLogs") == "['OTELLogs']"

    def test_quote_and_backslash_escaped(self):
        assert kql_identifier("it's\\x") == "['it\\'s\\\\x']"


class TestKustoQueryClient:
    def _client(self, handler, token="kusto-token") -> KustoQueryClient:
        return KustoQueryClient(
            QUERY_URI,
            "otelobservabilitydb",
            token=lambda: token,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

    def test_query_posts_to_query_endpoint(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"Tables": [{"Columns": [{"ColumnName": "Count"}], "Rows": [[5]]}]})

        rows = self._client(handler).query("OTELLogs | count")

        assert rows == [{"Count": 5}]
        assert seen["url"] == "https://trd-otel.z0.kusto.fabric.microsoft.com/v1/rest/query"
        assert seen["auth"] == "Bearer kusto-token"
        assert seen["body"] == {"db": "otelobservabilitydb", "csl": "OTELLogs | count"}

    def test_command_posts_to_mgmt_endpoint(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"Tables": []})

        assert self._client(handler).command(".show tables") == []
        assert paths == ["/v1/rest/mgmt"]

    def test_errors_are_classified(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"code": "BadRequest", "message": "Semantic error", "@type": "Kusto.SemanticException"}}
            )

        with pytest.raises(InvalidDefinitionError) as exc:
            self._client(handler).query("Nope | count")
        assert exc.value.context.resource_name == "otelobservabilitydb"

    def test_unauthorized(self):
        with pytest.raises(AuthenticationError):
            self._client(lambda r: httpx.Response(401, json={})).query("x")
