"""
Tests for the HTTP surface, with the agent and the query endpoint faked.
"""

import unittest
from unittest.mock import Mock

from fastapi.testclient import TestClient

from agents.query_repair import QueryRepairLoop
from agents.sql_converter_agent import SqlConverterAgent
from app import create_app
from db import QueryEndpointError
from errors import AgentUnavailable
from llm.agent_client import AgentClient
from models import AgentReply

FILE_ID = "59037db4-f134-41d6-9cea-931d56278a38"

AGE_REPLY = """1. You want the records where Age is over 30.
```sql
SELECT row_data FROM csv_data WHERE file_id = '[UUID]' AND row_data->>'Age' > 30;
```
3. Every record whose Age is above 30."""

BODY = {
    "prompt": "show rows where Age > 30",
    "schema": {"Age": "numeric"},
    "sampleRows": [{"Age": 25}],
    "fileId": FILE_ID,
}


class TestConvertEndpoint(unittest.TestCase):

    def setUp(self):
        self.agent_client = Mock(spec=AgentClient)
        self.agent_client.send.return_value = AgentReply(raw_text=AGE_REPLY)
        self.endpoint = Mock(return_value=[])
        self.runner = QueryRepairLoop(self.endpoint)
        self.app = create_app(converter=SqlConverterAgent(self.agent_client, self.runner), runner=self.runner)
        self.client = TestClient(self.app)

    def test_age_scenario(self):
        resp = self.client.post("/api/convert", json=BODY)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertIn(f"file_id = '{FILE_ID}'", data["sql"])
        self.assertIn("(row_data->>'Age')::numeric > 30", data["sql"])
        self.assertEqual(data["restatement"], "You want the records where Age is over 30.")
        self.assertEqual(data["resultDescription"], "Every record whose Age is above 30.")
        self.assertFalse(data["isGeneralQuestion"])
        self.assertEqual(data["reply"], AGE_REPLY)

    def test_legacy_chat_path(self):
        resp = self.client.post("/api/mastra/chat", json=BODY)
        self.assertEqual(resp.status_code, 200)
        self.assertIn("::numeric > 30", resp.json()["sql"])

    def test_missing_prompt_is_400_without_agent_call(self):
        body = dict(BODY)
        del body["prompt"]
        resp = self.client.post("/api/convert", json=body)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Prompt is required")
        self.agent_client.send.assert_not_called()

    def test_invalid_fields_are_400(self):
        for override, message in (({"schema": "Age"}, "Invalid schema"),
                                  ({"sampleRows": "nope"}, "Invalid sample rows")):
            with self.subTest(message=message):
                resp = self.client.post("/api/convert", json=dict(BODY, **override))
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["error"], message)
        self.agent_client.send.assert_not_called()

    def test_malformed_json(self):
        resp = self.client.post("/api/convert", content="{not json",
                                headers={"content-type": "application/json"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Invalid JSON body"})

    def test_agent_unavailable_is_500(self):
        self.agent_client.send.side_effect = AgentUnavailable(
            "Agent service unavailable after 3 attempt(s): ConnectionError: refused")
        resp = self.client.post("/api/convert", json=BODY)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["type"], "AgentUnavailable")
        self.assertIn("after 3 attempt(s)", resp.json()["error"])

    def test_unexpected_error_is_generic_500(self):
        self.agent_client.send.side_effect = RuntimeError("boom with secret")
        client = TestClient(self.app, raise_server_exceptions=False)
        resp = client.post("/api/convert", json=BODY)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"error": "Failed to process request"})

    def test_analytical_request_returns_results(self):
        self.agent_client.send.return_value = AgentReply(
            raw_text="How many rows?\n```sql\nSELECT COUNT(*) AS n FROM csv_data WHERE file_id = '[UUID]';\n```")
        self.endpoint.return_value = [{"n": 12}]
        resp = self.client.post("/api/convert", json=dict(BODY, prompt="how many rows are there"))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["isGeneralQuestion"])
        self.assertEqual(data["results"][0]["rows"], [{"n": 12}])
        self.assertEqual(data["results"][0]["rowCount"], 1)

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"ok": True})


class TestExecuteEndpoint(unittest.TestCase):

    def setUp(self):
        self.endpoint = Mock(return_value=[{"Age": 40}])
        runner = QueryRepairLoop(self.endpoint)
        self.client = TestClient(create_app(converter=SqlConverterAgent(Mock(spec=AgentClient), runner),
                                            runner=runner))

    def test_executes_and_normalizes(self):
        resp = self.client.post("/api/execute", json={
            "sql": "SELECT * FROM csv_data WHERE file_id = '[UUID]' AND row_data->>'Age' > 30",
            "fileId": FILE_ID,
            "schema": {"Age": "integer"},
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["rows"], [{"Age": 40}])
        self.assertEqual(data["rowCount"], 1)
        self.assertFalse(data["repaired"])
        self.assertEqual(data["warnings"], [])
        self.assertEqual(
            data["sql"],
            f"SELECT row_data::json FROM csv_data WHERE file_id = '{FILE_ID}' AND (row_data->>'Age')::integer > 30;")

    def test_repaired_execution(self):
        self.endpoint.side_effect = [QueryEndpointError("type jsonb does not match expected type json"), [{"a": 1}]]
        resp = self.client.post("/api/execute", json={"sql": "SELECT row_data::jsonb FROM csv_data"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["repaired"])
        self.assertEqual(self.endpoint.call_count, 2)

    def test_disallowed_statement_is_400(self):
        resp = self.client.post("/api/execute", json={"sql": "DROP TABLE csv_data"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["type"], "DisallowedStatement")
        self.endpoint.assert_not_called()

    def test_execution_failure_is_500_with_details(self):
        self.endpoint.side_effect = QueryEndpointError("column \"x\" does not exist", code="42703",
                                                       details="d", hint="check the column")
        resp = self.client.post("/api/execute", json={"sql": "SELECT x FROM csv_data"})
        self.assertEqual(resp.status_code, 500)
        data = resp.json()
        self.assertEqual(data["code"], "42703")
        self.assertEqual(data["hint"], "check the column")
        self.assertEqual(data["details"], "d")
        self.assertEqual(data["message"], "column \"x\" does not exist")

    def test_unscoped_statement_warns(self):
        resp = self.client.post("/api/execute", json={"sql": "SELECT COUNT(*) FROM csv_data", "fileId": FILE_ID})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["warnings"]), 1)

    def test_empty_sql_is_400(self):
        resp = self.client.post("/api/execute", json={"sql": "  ;  "})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "SQL is required")

    def test_missing_sql_is_400(self):
        resp = self.client.post("/api/execute", json={"fileId": FILE_ID})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("sql", resp.json()["error"])

    def test_malformed_json(self):
        resp = self.client.post("/api/execute", content="{", headers={"content-type": "application/json"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Invalid JSON body"})


if __name__ == "__main__":
    unittest.main()
