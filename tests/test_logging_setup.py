import json
import logging
import unittest

from flask import Flask, g

from cassette_tracker.logging_setup import JsonFormatter, RequestContextFilter
from cassette_tracker.models import UserAccount


def _record(**extra):
    record = logging.LogRecord("cassette_tracker.test", logging.INFO, __file__, 1, "Saved %s", ("row",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter(unittest.TestCase):
    def test_event_and_context_are_included(self):
        payload = json.loads(
            JsonFormatter().format(_record(event="tracker_saved", context={"user": "a@example.com"}))
        )

        self.assertEqual(payload["message"], "Saved row")
        self.assertEqual(payload["event"], "tracker_saved")
        self.assertEqual(payload["context"], {"user": "a@example.com"})
        self.assertTrue(payload["timestamp"].endswith("Z"))
        self.assertNotIn("request", payload)

    def test_request_filter_adds_endpoint_and_user(self):
        app = Flask(__name__)
        with app.test_request_context("/api/save", method="POST"):
            g.user = UserAccount(id=7, email="a@example.com", display_name="", role="admin")
            record = _record()
            RequestContextFilter().filter(record)

        payload = json.loads(JsonFormatter().format(record))
        self.assertEqual(payload["request"]["method"], "POST")
        self.assertEqual(payload["request"]["user_id"], 7)


if __name__ == "__main__":
    unittest.main(verbosity=2)
