import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from cassette_tracker.app import create_app, get_services
from cassette_tracker.models import Facet, Section


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.app = create_app(root=Path(self._tmp.name), testing=True)
        with self.app.app_context():
            self.services = get_services()
        self.admin = self.services.auth.create_user("admin@example.com", "secret1", role="admin")
        self.viewer = self.services.auth.create_user("viewer@example.com", "secret1")
        self.client = self.app.test_client()

    def tearDown(self):
        self.services.tracker.close()
        self._tmp.cleanup()

    def login(self, email="admin@example.com", password="secret1"):
        return self.client.post("/login", data={"email": email, "password": password})


class TestAuthFlow(AppTestCase):
    def test_anonymous_requests_are_turned_away(self):
        self.assertEqual(self.client.get("/").status_code, 302)
        self.assertEqual(self.client.get("/api/state").status_code, 401)
        self.assertEqual(self.client.get("/export/csv").status_code, 401)

    def test_bad_login_renders_error(self):
        response = self.login(password="nope123")

        self.assertEqual(response.status_code, 401)
        self.assertIn(b"Incorrect email or password.", response.data)

    def test_login_and_render_pages(self):
        self.assertEqual(self.login().status_code, 302)
        for path in ("/", "/summary", "/suras", "/profile"):
            self.assertEqual(self.client.get(path).status_code, 200, path)

    def test_viewer_cannot_edit(self):
        self.login("viewer@example.com")
        response = self.client.post(
            "/api/gesture/begin", json={"section": "edited", "facet": "main", "index": 0}
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(self.services.tracker.state.edited.main[0])


class TestTrackerApi(AppTestCase):
    def setUp(self):
        super().setUp()
        self.login()

    def test_drag_gesture(self):
        self.client.post("/api/gesture/begin", json={"section": "captured", "facet": "main", "index": 0})
        self.client.post("/api/gesture/extend", json={"section": "captured", "facet": "main", "index": 1})
        self.client.post("/api/gesture/end")

        state = self.client.get("/api/state").get_json()
        self.assertEqual(state["state"]["captured"]["main"][:3], [True, True, False])
        self.assertEqual(state["stats"]["captured"]["count"], 2)

    def test_gesture_responses_carry_changes(self):
        begun = self.client.post(
            "/api/gesture/begin", json={"section": "edited", "facet": "main", "index": 4}
        ).get_json()
        extended = self.client.post(
            "/api/gesture/extend", json={"section": "edited", "facet": "main", "index": 5}
        ).get_json()

        self.assertEqual(begun["changes"], [{"section": "edited", "facet": "main", "index": 4, "value": True}])
        self.assertEqual(extended["changes"], [{"section": "edited", "facet": "main", "index": 5, "value": True}])

    def test_grid_page_exposes_paint_targets(self):
        page = self.client.get("/").get_data(as_text=True)

        self.assertIn('data-stat="edited.count"', page)
        self.assertIn('data-facet="main"', page)

    def test_client_script_sends_gesture_calls_in_order(self):
        script = self.client.get("/static/tracker.js").get_data(as_text=True)

        for path in ("/api/gesture/begin", "/api/gesture/extend", "/api/gesture/end", "/api/cells/tap"):
            self.assertIn(f'post("{path}"', script)
            self.assertNotIn(f'api("{path}"', script)
        self.assertIn("applyChanges", script)

    def test_locked_database_returns_json_error(self):
        locked = sqlite3.OperationalError("Database is still locked after 50 write attempts.")
        with mock.patch.object(self.services.tracker, "save", side_effect=locked):
            response = self.client.post("/api/save")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Something went wrong. Please try again."})

    def test_invalid_cell_is_rejected(self):
        response = self.client.post(
            "/api/gesture/begin", json={"section": "edited", "facet": "main", "index": 180}
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            "/api/gesture/begin", json={"section": "archive", "facet": "main", "index": 1}
        )
        self.assertEqual(response.status_code, 400)

    def test_reset_requires_password(self):
        self.services.tracker.toggle(self.admin, Section.EDITED, Facet.MAIN, 0)

        response = self.client.post("/api/reset", json={"password": "wrong!!"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "Incorrect password")
        self.assertTrue(self.services.tracker.state.edited.main[0])

        response = self.client.post("/api/reset", json={"password": "secret1"})
        self.assertEqual(response.get_json()["cleared"], 1)
        self.assertFalse(self.services.tracker.state.edited.main[0])

    def test_export_count(self):
        self.assertEqual(self.client.post("/api/export-count", json={"value": "7"}).get_json()["export_count"], 7)
        self.assertEqual(self.client.post("/api/export-count", json={"value": "x"}).status_code, 400)

    def test_history_labels(self):
        self.services.tracker.toggle(self.admin, Section.EDITED, Facet.MAIN, 0)
        self.services.tracker.toggle(self.admin, Section.EDITED, Facet.PAID, 0)

        history = self.client.get("/api/history").get_json()["history"]
        self.assertEqual(history[0]["section_label"], "Edited Paid")
        self.assertEqual(history[0]["action"], "marked paid")

    def test_double_tap_returns_comment(self):
        self.services.comments.add(self.admin, 2, Section.EDITED, "retake")
        self.client.post("/api/cells/tap", json={"section": "edited", "index": 2})
        response = self.client.post("/api/cells/tap", json={"section": "edited", "index": 2}).get_json()

        self.assertEqual(response["outcomes"], ["double"])
        self.assertEqual(response["comment"]["comment"], "retake")

    def test_csv_download(self):
        self.services.tracker.toggle(self.admin, Section.EDITED, Facet.MAIN, 0)
        response = self.client.get("/export/csv")

        self.assertEqual(response.mimetype, "text/csv")
        self.assertIn("attachment", response.headers["Content-Disposition"])
        self.assertIn(b'1,Yes,,,"",,,,""', response.data)

    def test_excel_download(self):
        response = self.client.get("/export/excel")

        self.assertEqual(response.mimetype, "application/vnd.ms-excel")
        self.assertTrue(response.data.startswith(b"<?xml"))


class TestCommentsAndProfileApi(AppTestCase):
    def test_comment_crud(self):
        self.login()
        created = self.client.post("/api/comments", json={"section": "captured", "index": 3, "comment": "hiss"})
        self.assertEqual(created.status_code, 201)
        comment_id = created.get_json()["comment"]["id"]

        cell = self.client.get("/api/comments/cell?section=captured&index=3").get_json()
        self.assertEqual(cell["comment"]["id"], comment_id)

        updated = self.client.put(f"/api/comments/{comment_id}", json={"comment": "fixed"})
        self.assertEqual(updated.get_json()["comment"]["comment"], "fixed")
        self.assertEqual(self.client.delete(f"/api/comments/{comment_id}").status_code, 200)
        self.assertEqual(self.client.delete(f"/api/comments/{comment_id}").status_code, 404)
        self.assertEqual(
            self.client.post("/api/comments", json={"section": "captured", "index": 3, "comment": ""}).status_code,
            400,
        )

    def test_viewer_sees_unread_comment(self):
        self.services.gateway.set_last_seen(self.viewer.id, "2000-01-01T00:00:00.000Z")
        self.services.comments.add(self.admin, 0, Section.EDITED, "note")
        self.login("viewer@example.com")

        summary = self.client.get("/api/notifications").get_json()
        self.assertEqual(summary["badge"], "1")
        self.client.post("/api/notifications/seen")
        self.assertEqual(self.client.get("/api/notifications").get_json()["badge"], "")

    def test_sura_update(self):
        self.login()
        response = self.client.post("/api/suras/1", json={"cassette_count": "1, 2"})
        self.assertEqual(response.get_json()["sura"]["cassette_count"], "1, 2")
        self.assertEqual(self.client.get("/api/suras").get_json()["total_cassettes"], 2)
        self.assertEqual(self.client.post("/api/suras/999", json={"cassette_count": "1"}).status_code, 404)
        self.assertEqual(self.client.post("/api/suras/2", json={"cassette_count": "a"}).status_code, 400)

    def test_password_change_reports_field(self):
        self.login("viewer@example.com")
        response = self.client.post(
            "/api/profile/password",
            json={"current_password": "bad-one", "new_password": "newpass1", "confirm_password": "newpass1"},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["field"], "current_password")

        response = self.client.post("/api/profile/name", json={"display_name": "Viewer"})
        self.assertEqual(response.get_json()["user"]["display_name"], "Viewer")


class TestCli(AppTestCase):
    def test_create_user_command(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["create-user", "new@example.com", "secret1", "--admin"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Created admin account", result.output)
        result = runner.invoke(args=["create-user", "new@example.com", "secret1"])
        self.assertNotEqual(result.exit_code, 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
