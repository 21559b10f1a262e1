import json
import sqlite3
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

from cassette_tracker.db import WRITE_RETRIES, execute_write, init_db
from cassette_tracker.errors import MalformedRowError, ValidationError
from cassette_tracker.models import Facet, Section, TrackerState, UserAccount
from cassette_tracker.services.gateway import (
    CELL_COLUMNS,
    PersistenceGateway,
    decode_tracker_row,
    encode_tracker_row,
)
from cassette_tracker.services.comments import CommentStore
from cassette_tracker.services.realtime import ChangeEvent, ChangeFeed
from cassette_tracker.services.store import set_facet
from cassette_tracker.services.tracker import TrackerService, parse_export_count

ADMIN = UserAccount(id=1, email="admin@example.com", display_name="Admin", role="admin")


class GatewayTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "tracker.db"
        init_db(self.db_path)
        self.feed = ChangeFeed()
        self.gateway = PersistenceGateway(self.db_path, self.feed)

    def tearDown(self):
        self._tmp.cleanup()


class TestRowDecoding(unittest.TestCase):
    def _row(self):
        return encode_tracker_row(TrackerState.empty())

    def test_round_trip_of_filled_cell(self):
        state, _ = set_facet(TrackerState.empty(), Section.CAPTURED, Facet.MAIN, 9, True)
        decoded = decode_tracker_row(encode_tracker_row(state))

        self.assertTrue(decoded.value(Section.CAPTURED, Facet.MAIN, 9))

    def test_rejects_short_array(self):
        row = self._row()
        row["paid_cells"] = json.dumps([False] * 179)
        with self.assertRaises(MalformedRowError):
            decode_tracker_row(row)

    def test_rejects_non_boolean_entries(self):
        row = self._row()
        row["edited_cells"] = json.dumps([0] * 180)
        with self.assertRaises(MalformedRowError):
            decode_tracker_row(row)

    def test_rejects_missing_column_and_bad_json(self):
        row = self._row()
        del row[CELL_COLUMNS[(Section.EDITED, Facet.PAID)]]
        with self.assertRaises(MalformedRowError):
            decode_tracker_row(row)

        row = self._row()
        row["captured_cells"] = "not json"
        with self.assertRaises(MalformedRowError):
            decode_tracker_row(row)

    def test_accepts_decoded_lists(self):
        row = self._row()
        row["edited_cells"] = [True] + [False] * 179
        self.assertTrue(decode_tracker_row(row).edited.main[0])


class TestPersistenceGateway(GatewayTestCase):
    def test_load_seeds_blank_row(self):
        state = self.gateway.load_tracker()

        self.assertEqual(state.edited.count(Facet.MAIN), 0)
        self.assertIsNotNone(state.updated_at)

    def test_save_publishes_row_image(self):
        events = []
        self.feed.subscribe(events.append, table="tracker_data")
        state, _ = set_facet(TrackerState.empty(), Section.EDITED, Facet.MAIN, 0, True)

        self.gateway.save_tracker(state, origin="abc")

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].origin, "abc")
        self.assertTrue(self.gateway.load_tracker().edited.main[0])

    def test_comments_listed_newest_first(self):
        comments = CommentStore(self.gateway)
        first = comments.add(ADMIN, 0, Section.EDITED, "first")
        second = comments.add(ADMIN, 0, Section.EDITED, "  second  ")

        listed = comments.list()
        self.assertEqual([c.id for c in listed], [second.id, first.id])
        self.assertEqual(listed[0].comment, "second")
        self.assertEqual(comments.for_cell(0, Section.EDITED).id, second.id)
        self.assertIsNone(comments.for_cell(0, Section.CAPTURED))

    def test_comment_update_and_delete(self):
        comments = CommentStore(self.gateway)
        comment = comments.add(ADMIN, 5, Section.CAPTURED, "noisy")

        self.assertEqual(comments.update(comment.id, "clean").comment, "clean")
        self.assertIsNone(comments.update(999, "missing"))
        self.assertTrue(comments.delete(comment.id))
        self.assertFalse(comments.delete(comment.id))
        with self.assertRaises(ValidationError):
            comments.add(ADMIN, 5, Section.CAPTURED, "   ")


class SlowFirstCellGateway(PersistenceGateway):
    """Stalls the save of a row where only the first cell is filled."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.saving = threading.Event()

    def save_tracker(self, state, origin=None):
        if state.edited.main[0] and not state.edited.main[1]:
            self.saving.set()
            time.sleep(0.3)
        return super().save_tracker(state, origin)


class LockedConnection:
    def __init__(self):
        self.attempts = 0

    def execute(self, statement, params):
        self.attempts += 1
        raise sqlite3.OperationalError("database is locked")

    def commit(self):
        pass


class TestExecuteWrite(unittest.TestCase):
    def test_gives_up_with_operational_error(self):
        conn = LockedConnection()
        with mock.patch("cassette_tracker.db.time.sleep") as sleep:
            with self.assertRaises(sqlite3.OperationalError):
                execute_write(conn, "UPDATE tracker_data SET export_count = 1")

        self.assertEqual(conn.attempts, WRITE_RETRIES)
        self.assertEqual(sleep.call_count, WRITE_RETRIES - 1)


class TestTrackerService(GatewayTestCase):
    def test_concurrent_saves_keep_newest_state(self):
        gateway = SlowFirstCellGateway(self.db_path, self.feed)
        service = TrackerService(gateway)
        worker = threading.Thread(
            target=service.toggle, args=(ADMIN, Section.EDITED, Facet.MAIN, 0)
        )
        worker.start()
        self.assertTrue(gateway.saving.wait(timeout=5))

        service.toggle(ADMIN, Section.EDITED, Facet.MAIN, 1)
        worker.join(timeout=5)

        self.assertEqual(service.state.edited.main[:2], (True, True))
        self.assertEqual(gateway.load_tracker().edited.main[:2], (True, True))
        self.assertEqual(len(service.history()), 2)

    def test_local_change_is_saved_and_logged(self):
        service = TrackerService(self.gateway)
        service.toggle(ADMIN, Section.EDITED, Facet.MAIN, 2)

        saved = self.gateway.load_tracker()
        self.assertTrue(saved.edited.main[2])
        self.assertEqual(saved.updated_by, ADMIN.email)
        history = service.history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].action, "filled")
        self.assertEqual(history[0].section, "edited")
        self.assertEqual(history[0].changed_by_email, ADMIN.email)

    def test_cascade_logs_each_cleared_facet(self):
        service = TrackerService(self.gateway)
        service.toggle(ADMIN, Section.CAPTURED, Facet.MAIN, 0)
        service.toggle(ADMIN, Section.CAPTURED, Facet.RE_ACTION, 0)
        service.toggle(ADMIN, Section.CAPTURED, Facet.MAIN, 0)

        actions = {(h.section, h.action) for h in service.history()}
        self.assertIn(("re_captured", "marked re-capture"), actions)
        self.assertIn(("re_captured", "unmarked re-capture"), actions)
        self.assertIn(("captured", "unfilled"), actions)

    def test_history_is_capped(self):
        service = TrackerService(self.gateway)
        for index in range(120):
            service.toggle(ADMIN, Section.EDITED, Facet.MAIN, index)

        history = service.history()
        self.assertEqual(len(history), 100)
        self.assertEqual(len(service.history(limit=500)), 100)

    def test_other_instance_replaces_state(self):
        first = TrackerService(self.gateway)
        second = TrackerService(self.gateway)

        first.toggle(ADMIN, Section.EDITED, Facet.MAIN, 11)

        self.assertTrue(second.state.edited.main[11])
        self.assertEqual(len(first.history()), 1)

    def test_own_echo_is_ignored(self):
        service = TrackerService(self.gateway)
        replaced = []
        service.store.subscribe(lambda state, changes, source: replaced.append(source))

        service.toggle(ADMIN, Section.EDITED, Facet.MAIN, 0)

        self.assertEqual(replaced, ["local"])

    def test_malformed_remote_row_is_skipped(self):
        service = TrackerService(self.gateway)
        before = service.state
        row = encode_tracker_row(TrackerState.empty())
        row["edited_cells"] = "[true]"

        self.feed.publish(ChangeEvent("tracker_data", "UPDATE", row, origin="elsewhere"))

        self.assertIs(service.state, before)

    def test_reset_keeps_counter_and_logs_cells(self):
        service = TrackerService(self.gateway)
        service.toggle(ADMIN, Section.EDITED, Facet.MAIN, 0)
        service.set_export_count(ADMIN, "4")

        cleared = service.reset(ADMIN)

        self.assertEqual(len(cleared), 1)
        saved = self.gateway.load_tracker()
        self.assertEqual(saved.edited.count(Facet.MAIN), 0)
        self.assertEqual(saved.export_count, 4)

    def test_tap_applies_single_click_after_settle(self):
        service = TrackerService(self.gateway)
        clock = [0.0]
        service.clicks_for(ADMIN.id).clock = lambda: clock[0]

        service.tap(ADMIN, Section.EDITED, 3)
        self.assertFalse(service.state.edited.main[3])
        clock[0] = 1.0
        self.assertEqual(service.settle(ADMIN).kind, "single")
        self.assertTrue(service.state.edited.main[3])

    def test_double_tap_does_not_toggle(self):
        service = TrackerService(self.gateway)
        clock = [0.0]
        service.clicks_for(ADMIN.id).clock = lambda: clock[0]

        service.tap(ADMIN, Section.EDITED, 3)
        clock[0] = 0.1
        outcomes = service.tap(ADMIN, Section.EDITED, 3)

        self.assertEqual(outcomes[-1].kind, "double")
        clock[0] = 2.0
        self.assertEqual(service.settle(ADMIN).kind, "idle")
        self.assertFalse(service.state.edited.main[3])

    def test_parse_export_count(self):
        self.assertEqual(parse_export_count(" 12 "), 12)
        for bad in ("-1", "abc", True, None):
            with self.assertRaises(ValidationError):
                parse_export_count(bad)


if __name__ == "__main__":
    unittest.main(verbosity=2)
