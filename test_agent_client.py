"""
Tests for the agent request client: preconditions, retry and backoff.
"""

import json
import threading
import unittest
from unittest.mock import Mock

from errors import AgentUnavailable, ConfigurationMissing, InvalidRequest, RequestCancelled
from llm.agent_client import MAX_SAMPLE_ROWS, AgentClient
from llm.base import LLM

SCHEMA = {"Age": "numeric"}
ROWS = [{"Age": 25}]


def make_client(side_effect, **kwargs):
    llm = Mock(spec=LLM)
    llm.complete.side_effect = side_effect
    sleeps = []
    client = AgentClient(llm, "You convert questions to SQL.", sleep=sleeps.append, **kwargs)
    return client, llm, sleeps


class TestAgentClientRetry(unittest.TestCase):

    def test_succeeds_on_third_attempt(self):
        client, llm, sleeps = make_client([ConnectionError("reset"), TimeoutError("slow"), "```sql\nSELECT 1\n```"])
        reply = client.send("show rows", SCHEMA, ROWS)
        self.assertEqual(reply.raw_text, "```sql\nSELECT 1\n```")
        self.assertEqual(llm.complete.call_count, 3)
        self.assertEqual(len(sleeps), 2)

    def test_always_failing_raises_agent_unavailable(self):
        client, llm, sleeps = make_client(ConnectionError("refused"))
        with self.assertRaises(AgentUnavailable) as ctx:
            client.send("show rows", SCHEMA, ROWS)
        self.assertEqual(llm.complete.call_count, 3)
        self.assertIn("after 3 attempt(s)", ctx.exception.message)
        self.assertIn("refused", ctx.exception.message)
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)
        self.assertEqual(len(sleeps), 2)
        self.assertAlmostEqual(sleeps[0], 0.3)
        self.assertAlmostEqual(sleeps[1], 0.6)

    def test_backoff_is_capped(self):
        client, _, sleeps = make_client(ConnectionError("down"), retries=5, backoff_ms=1000, max_backoff_ms=2500)
        with self.assertRaises(AgentUnavailable):
            client.send("show rows", SCHEMA, ROWS)
        self.assertEqual([round(s, 3) for s in sleeps], [1.0, 2.0, 2.5, 2.5])

    def test_non_transport_errors_are_not_retried(self):
        client, llm, sleeps = make_client(ValueError("bug"))
        with self.assertRaises(ValueError):
            client.send("show rows", SCHEMA, ROWS)
        self.assertEqual(llm.complete.call_count, 1)
        self.assertEqual(sleeps, [])


class TestAgentClientPreconditions(unittest.TestCase):

    def test_empty_prompt_never_calls_agent(self):
        client, llm, _ = make_client(["unused"])
        for prompt in ("", "   ", None):
            with self.subTest(prompt=prompt):
                with self.assertRaises(InvalidRequest) as ctx:
                    client.send(prompt, SCHEMA, ROWS)
                self.assertEqual(ctx.exception.message, "Input prompt is required")
        llm.complete.assert_not_called()

    def test_missing_context_is_configuration_error(self):
        client, llm, _ = make_client(["unused"])
        with self.assertRaises(ConfigurationMissing):
            client.send("show rows", None, ROWS)
        with self.assertRaises(ConfigurationMissing):
            client.send("show rows", SCHEMA, None)
        llm.complete.assert_not_called()

    def test_instructions_required(self):
        with self.assertRaises(ConfigurationMissing):
            AgentClient(Mock(spec=LLM), "")

    def test_context_is_capped_and_carries_dataset(self):
        client, llm, _ = make_client(["ok"])
        rows = [{"Age": i} for i in range(MAX_SAMPLE_ROWS + 20)]
        client.send("show rows", SCHEMA, rows, dataset_id="abc")
        kwargs = llm.complete.call_args.kwargs
        context = json.loads(kwargs["context"])
        self.assertEqual(len(context["sampleRows"]), MAX_SAMPLE_ROWS)
        self.assertEqual(context["schema"], SCHEMA)
        self.assertEqual(context["fileId"], "abc")
        self.assertEqual(kwargs["system"], "You convert questions to SQL.")

    def test_cancelled_before_first_attempt(self):
        client, llm, _ = make_client(["unused"])
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(RequestCancelled):
            client.send("show rows", SCHEMA, ROWS, cancel_event=cancel)
        llm.complete.assert_not_called()

    def test_cancel_during_backoff_stops_retrying(self):
        cancel = threading.Event()
        llm = Mock(spec=LLM)
        llm.complete.side_effect = ConnectionError("refused")
        client = AgentClient(llm, "instructions", sleep=lambda _s: cancel.set())
        with self.assertRaises(RequestCancelled):
            client.send("show rows", SCHEMA, ROWS, cancel_event=cancel)
        self.assertEqual(llm.complete.call_count, 1)


if __name__ == "__main__":
    unittest.main()
