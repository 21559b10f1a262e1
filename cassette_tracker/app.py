"""Flask entrypoint for the cassette tracker."""

from __future__ import annotations

import json
import logging
import queue
import sqlite3
from dataclasses import dataclass
from pathlib import Path

import click
from flask import (
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from cassette_tracker.config import CELL_COUNT, ensure_dirs, get_paths, get_secret_key
from cassette_tracker.db import init_db
from cassette_tracker.errors import (
    AuthenticationError,
    MalformedRowError,
    PermissionDenied,
    ValidationError,
)
from cassette_tracker.logging_setup import setup_logging
from cassette_tracker.models import Facet, Section, parse_facet, parse_index, parse_section
from cassette_tracker.services.auth import AuthService
from cassette_tracker.services.comments import CommentStore
from cassette_tracker.services.export import (
    CSV_FILENAME,
    CSV_MIMETYPE,
    EXCEL_FILENAME,
    EXCEL_MIMETYPE,
    export_csv,
    export_excel_xml,
)
from cassette_tracker.services.gateway import PersistenceGateway
from cassette_tracker.services.history import SECTION_LABELS
from cassette_tracker.services.notifications import NotificationService
from cassette_tracker.services.realtime import ChangeFeed
from cassette_tracker.services.stats import derive_stats
from cassette_tracker.services.suras import SuraTable, seed_rows, total_cassettes
from cassette_tracker.services.tracker import TrackerService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "cassette_tracker"
PUBLIC_ENDPOINTS = {"login", "static"}
SSE_KEEPALIVE_SECONDS = 15


@dataclass
class Services:
    """Service objects shared by every request."""

    gateway: PersistenceGateway
    tracker: TrackerService
    comments: CommentStore
    suras: SuraTable
    auth: AuthService
    notifications: NotificationService


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _require_admin() -> None:
    if not g.user.is_admin:
        raise PermissionDenied("View only - admin access required to edit.")


def _cell_args(data: dict) -> tuple[Section, Facet, int]:
    return (
        parse_section(data.get("section")),
        parse_facet(data.get("facet", Facet.MAIN.value)),
        parse_index(data.get("index")),
    )


def _changes_payload(changes) -> list[dict]:
    return [
        {
            "section": change.section.value,
            "facet": change.facet.value,
            "index": change.index,
            "value": change.value,
        }
        for change in changes
    ]


def _state_payload(services: Services) -> dict:
    state = services.tracker.state
    return {
        "state": state.to_dict(),
        "stats": derive_stats(state).to_dict(),
        "comments": [comment.to_dict() for comment in services.comments.list()],
    }


def create_app(root: Path | None = None, testing: bool = False) -> Flask:
    """Application factory for the cassette tracker."""

    paths = ensure_dirs(get_paths(root))
    setup_logging(paths.logs_dir)
    init_db(paths.db_path, seed_rows())

    base_dir = Path(__file__).resolve().parent
    app = Flask(
        __name__,
        template_folder=str(base_dir / "web" / "templates"),
        static_folder=str(base_dir / "web" / "static"),
        static_url_path="/static",
    )
    app.secret_key = get_secret_key()
    app.config["TESTING"] = testing

    gateway = PersistenceGateway(paths.db_path, ChangeFeed())
    app.extensions[EXTENSION_KEY] = Services(
        gateway=gateway,
        tracker=TrackerService(gateway),
        comments=CommentStore(gateway),
        suras=SuraTable(gateway),
        auth=AuthService(gateway),
        notifications=NotificationService(gateway),
    )
    logger.info(
        "Application created",
        extra={"event": "app_created", "context": {"db_path": str(paths.db_path)}},
    )

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(AuthenticationError)
    def handle_authentication_error(exc: AuthenticationError):
        return jsonify({"error": str(exc), "field": exc.field}), 403

    @app.errorhandler(PermissionDenied)
    def handle_permission_denied(exc: PermissionDenied):
        return jsonify({"error": str(exc)}), 403

    @app.errorhandler(MalformedRowError)
    @app.errorhandler(sqlite3.Error)
    def handle_backend_error(exc: Exception):
        logger.exception(
            "Backend operation failed",
            extra={
                "event": "backend_failed",
                "context": {"endpoint": request.endpoint, "error": str(exc)},
            },
        )
        return jsonify({"error": "Something went wrong. Please try again."}), 500

    @app.before_request
    def load_signed_in_user():
        """Load the signed-in user and redirect anonymous visitors."""

        g.user = None
        user_id = session.get("user_id")
        if user_id is not None:
            g.user = get_services().auth.get(user_id)
        if request.endpoint in PUBLIC_ENDPOINTS or request.endpoint is None:
            return None
        if g.user is None:
            if request.path.startswith("/api/") or request.path.startswith("/export/"):
                return jsonify({"error": "Sign in required."}), 401
            return redirect(url_for("login"))
        return None

    @app.context_processor
    def inject_user() -> dict:
        return {"user": g.get("user"), "cell_count": CELL_COUNT}

    # Pages

    @app.route("/login", methods=["GET", "POST"])
    def login() -> str:
        """Render the sign-in form and start a session."""

        if request.method == "POST":
            email = request.form.get("email", "")
            try:
                user = get_services().auth.authenticate(
                    email, request.form.get("password", "")
                )
            except AuthenticationError as exc:
                return render_template("login.html", error=str(exc), email=email), 401
            session.clear()
            session["user_id"] = user.id
            logger.info(
                "User signed in",
                extra={"event": "sign_in", "context": {"user_id": user.id}},
            )
            return redirect(url_for("tracker"))
        return render_template("login.html", email="")

    @app.route("/logout", methods=["POST"])
    def logout() -> str:
        session.clear()
        return redirect(url_for("login"))

    @app.route("/")
    def tracker() -> str:
        """Render the two tracker grids."""

        services = get_services()
        state = services.tracker.state
        commented = {(c.section.value, c.cell_index) for c in services.comments.list()}
        return render_template(
            "tracker.html",
            state=state,
            stats=derive_stats(state),
            sections=list(Section),
            commented=commented,
        )

    @app.route("/summary")
    def summary() -> str:
        return render_template("summary.html", stats=derive_stats(get_services().tracker.state))

    @app.route("/suras")
    def suras() -> str:
        rows = get_services().suras.list()
        return render_template("suras.html", suras=rows, total=total_cassettes(rows))

    @app.route("/profile")
    def profile() -> str:
        return render_template("profile.html")

    # Tracker API

    @app.route("/api/state")
    def api_state():
        return jsonify(_state_payload(get_services()))

    @app.route("/api/gesture/begin", methods=["POST"])
    def gesture_begin():
        _require_admin()
        section, facet, index = _cell_args(_payload())
        changes = get_services().tracker.begin_gesture(g.user, section, facet, index)
        return jsonify({"changes": _changes_payload(changes)})

    @app.route("/api/gesture/extend", methods=["POST"])
    def gesture_extend():
        _require_admin()
        section, facet, index = _cell_args(_payload())
        changes = get_services().tracker.extend_gesture(g.user, section, facet, index)
        return jsonify({"changes": _changes_payload(changes)})

    @app.route("/api/gesture/end", methods=["POST"])
    def gesture_end():
        get_services().tracker.end_gesture(g.user)
        return jsonify({"ok": True})

    @app.route("/api/cells/tap", methods=["POST"])
    def cell_tap():
        """Register a main-area click; a double click returns the cell's comment."""

        _require_admin()
        data = _payload()
        section = parse_section(data.get("section"))
        index = parse_index(data.get("index"))
        services = get_services()
        outcomes = services.tracker.tap(g.user, section, index)
        response: dict = {"outcomes": [outcome.kind for outcome in outcomes]}
        if outcomes[-1].kind == "double":
            comment = services.comments.for_cell(index, section)
            response["comment"] = comment.to_dict() if comment else None
        return jsonify(response)

    @app.route("/api/cells/settle", methods=["POST"])
    def cell_settle():
        _require_admin()
        outcome = get_services().tracker.settle(g.user)
        return jsonify({"outcome": outcome.kind, "index": outcome.index})

    @app.route("/api/cells/long-press", methods=["POST"])
    def cell_long_press():
        data = _payload()
        section = parse_section(data.get("section"))
        index = parse_index(data.get("index"))
        comment = get_services().comments.for_cell(index, section)
        return jsonify({"comment": comment.to_dict() if comment else None})

    @app.route("/api/save", methods=["POST"])
    def save():
        _require_admin()
        state = get_services().tracker.save(g.user)
        return jsonify({"ok": True, "updated_at": state.updated_at})

    @app.route("/api/reset", methods=["POST"])
    def reset():
        """Clear every cell after confirming the caller's password."""

        _require_admin()
        services = get_services()
        services.auth.verify_password(g.user, _payload().get("password", ""))
        changes = services.tracker.reset(g.user)
        return jsonify({"ok": True, "cleared": len(changes)})

    @app.route("/api/export-count", methods=["POST"])
    def export_count():
        _require_admin()
        state = get_services().tracker.set_export_count(g.user, _payload().get("value"))
        return jsonify({"export_count": state.export_count})

    @app.route("/api/history")
    def history():
        entries = get_services().tracker.history()
        return jsonify(
            {
                "history": [
                    entry.to_dict() | {"section_label": SECTION_LABELS.get(entry.section, entry.section)}
                    for entry in entries
                ]
            }
        )

    # Comments API

    @app.route("/api/comments")
    def list_comments():
        return jsonify({"comments": [c.to_dict() for c in get_services().comments.list()]})

    @app.route("/api/comments/cell")
    def cell_comment():
        section = parse_section(request.args.get("section"))
        index = parse_index(request.args.get("index"))
        comment = get_services().comments.for_cell(index, section)
        return jsonify({"comment": comment.to_dict() if comment else None})

    @app.route("/api/comments", methods=["POST"])
    def add_comment():
        _require_admin()
        data = _payload()
        comment = get_services().comments.add(
            g.user,
            parse_index(data.get("index")),
            parse_section(data.get("section")),
            data.get("comment"),
        )
        return jsonify({"comment": comment.to_dict()}), 201

    @app.route("/api/comments/<int:comment_id>", methods=["PUT"])
    def update_comment(comment_id: int):
        _require_admin()
        comment = get_services().comments.update(comment_id, _payload().get("comment"))
        if comment is None:
            return jsonify({"error": "Comment not found"}), 404
        return jsonify({"comment": comment.to_dict()})

    @app.route("/api/comments/<int:comment_id>", methods=["DELETE"])
    def delete_comment(comment_id: int):
        _require_admin()
        if not get_services().comments.delete(comment_id):
            return jsonify({"error": "Comment not found"}), 404
        return jsonify({"ok": True})

    # Suras API

    @app.route("/api/suras")
    def list_suras():
        rows = get_services().suras.list()
        return jsonify({"suras": [row.to_dict() for row in rows], "total_cassettes": total_cassettes(rows)})

    @app.route("/api/suras/<int:number>", methods=["POST"])
    def update_sura(number: int):
        _require_admin()
        sura = get_services().suras.update(g.user, number, _payload().get("cassette_count"))
        if sura is None:
            return jsonify({"error": "Sura not found"}), 404
        return jsonify({"sura": sura.to_dict()})

    # Notifications and profile

    @app.route("/api/notifications")
    def notifications():
        return jsonify(get_services().notifications.summary(g.user).to_dict())

    @app.route("/api/notifications/seen", methods=["POST"])
    def notifications_seen():
        return jsonify({"last_seen_at": get_services().notifications.mark_seen(g.user)})

    @app.route("/api/profile/name", methods=["POST"])
    def profile_name():
        user = get_services().auth.update_display_name(g.user, _payload().get("display_name", ""))
        return jsonify({"user": user.to_dict()})

    @app.route("/api/profile/password", methods=["POST"])
    def profile_password():
        data = _payload()
        get_services().auth.change_password(
            g.user,
            data.get("current_password", ""),
            data.get("new_password", ""),
            data.get("confirm_password", ""),
        )
        return jsonify({"ok": True})

    # Exports

    @app.route("/export/csv")
    def export_csv_download():
        services = get_services()
        content = export_csv(services.tracker.state, services.comments.list())
        return _download(content, CSV_FILENAME, CSV_MIMETYPE)

    @app.route("/export/excel")
    def export_excel_download():
        services = get_services()
        content = export_excel_xml(services.tracker.state, services.comments.list())
        return _download(content, EXCEL_FILENAME, EXCEL_MIMETYPE)

    # Realtime

    @app.route("/api/events")
    def events():
        """Stream change-feed events as Server-Sent Events."""

        feed = get_services().gateway.feed
        events_queue, unsubscribe = feed.open_queue()

        def stream():
            try:
                yield ": connected\n\n"
                while True:
                    try:
                        event = events_queue.get(timeout=SSE_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: {event.table}\ndata: {json.dumps(event.to_dict())}\n\n"
            finally:
                unsubscribe()

        return Response(stream(), mimetype="text/event-stream", headers={"Cache-Control": "no-cache"})

    # CLI

    @app.cli.command("create-user")
    @click.argument("email")
    @click.argument("password")
    @click.option("--admin", is_flag=True, help="Grant edit access.")
    @click.option("--name", default="", help="Display name.")
    def create_user_command(email: str, password: str, admin: bool, name: str) -> None:
        """Create a sign-in account."""

        try:
            user = get_services().auth.create_user(
                email, password, role="admin" if admin else "user", display_name=name
            )
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Created {user.role} account {user.email} (id {user.id})")

    return app


def _download(content: str, filename: str, mimetype: str) -> Response:
    logger.info(
        "Export generated",
        extra={"event": "export_generated", "context": {"filename": filename, "bytes": len(content)}},
    )
    return Response(
        content.encode("utf-8"),
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


if __name__ == "__main__":
    application = create_app()
    application.run(debug=True, threaded=True)
