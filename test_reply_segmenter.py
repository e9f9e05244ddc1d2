"""
Tests for splitting agent replies into restatement, SQL and description.
"""

import json
import unittest

from tools.reply_segmenter import is_analytical, parse_reply, segment

THREE_PART_REPLY = """1. You want all rows where Age is over 30.
2. SQL:
```sql
SELECT row_data FROM csv_data WHERE file_id = '[UUID]' AND row_data->>'Age' > 30;
```
3. The results will show every record with an Age above 30."""


class TestSegment(unittest.TestCase):

    def test_three_part_reply(self):
        reply = segment(THREE_PART_REPLY)
        self.assertEqual(reply.restatement, "You want all rows where Age is over 30.")
        self.assertEqual(reply.query_text,
                         "SELECT row_data FROM csv_data WHERE file_id = '[UUID]' AND row_data->>'Age' > 30;")
        self.assertEqual(reply.description, "The results will show every record with an Age above 30.")
        self.assertFalse(reply.is_analytical)
        self.assertEqual(reply.extra_queries, ())

    def test_no_fence_keeps_whole_text(self):
        raw = "  I can only help with questions about your CSV data.\n"
        reply = segment(raw)
        self.assertEqual(reply.restatement, raw.strip())
        self.assertEqual(reply.query_text, "")
        self.assertEqual(reply.description, "")
        self.assertFalse(reply.is_analytical)

    def test_fence_tag_is_case_insensitive(self):
        reply = segment("Here it is\n```SQL\nSELECT 1\n```")
        self.assertEqual(reply.query_text, "SELECT 1")
        self.assertEqual(reply.restatement, "Here it is")

    def test_parts_never_carry_fences(self):
        raw = ("**1.** To determine the average age I'll run two queries.\n"
               "```sql\nSELECT AVG(row_data->>'Age') FROM csv_data;\n```\n"
               "and\n```sql\nSELECT COUNT(*) FROM csv_data;\n```\n"
               "3. You will see the average and the count.\n```\nextra\n```")
        reply = segment(raw)
        for part in (reply.restatement, reply.description):
            self.assertNotIn("```", part)
        self.assertEqual(reply.query_text, "SELECT AVG(row_data->>'Age') FROM csv_data;")
        self.assertEqual(reply.extra_queries, ("SELECT COUNT(*) FROM csv_data;",))
        self.assertTrue(reply.is_analytical)

    def test_list_numbers_inside_restatement_survive(self):
        reply = segment("Show the top 2.\n```sql\nSELECT 1\n```")
        self.assertEqual(reply.restatement, "Show the top 2.")

    def test_prompt_cues_mark_analytical(self):
        reply = segment("Sure.\n```sql\nSELECT 1\n```", prompt="How many rows are there?")
        self.assertTrue(reply.is_analytical)


class TestIsAnalytical(unittest.TestCase):

    def test_cues(self):
        self.assertTrue(is_analytical("What is the AVERAGE salary"))
        self.assertTrue(is_analytical(None, "let me run a count"))
        self.assertFalse(is_analytical("show rows where Age > 30"))
        self.assertFalse(is_analytical())


class TestParseReply(unittest.TestCase):

    def test_structured_reply(self):
        raw = json.dumps({
            "restatement": "Count rows per country.",
            "sql": "SELECT row_data->>'Country', COUNT(*) FROM csv_data GROUP BY 1;",
            "description": "One row per country.",
            "isAnalytical": True,
        })
        reply = parse_reply(raw)
        self.assertEqual(reply.restatement, "Count rows per country.")
        self.assertTrue(reply.query_text.startswith("SELECT row_data->>'Country'"))
        self.assertEqual(reply.description, "One row per country.")
        self.assertTrue(reply.is_analytical)

    def test_structured_reply_in_json_fence(self):
        raw = '```json\n{"sql": "```sql\\nSELECT 1\\n```", "restatement": "how many rows"}\n```'
        reply = parse_reply(raw)
        self.assertEqual(reply.query_text, "SELECT 1")
        self.assertTrue(reply.is_analytical)

    def test_text_reply_falls_back_to_segment(self):
        self.assertEqual(parse_reply(THREE_PART_REPLY), segment(THREE_PART_REPLY))

    def test_json_without_sql_is_text(self):
        raw = '{"answer": "hello"}'
        self.assertEqual(parse_reply(raw).restatement, raw)


if __name__ == "__main__":
    unittest.main()
