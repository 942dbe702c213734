# importer.py
# Bulk subscriber importer service.
# - Account directory (site URL + application password per account)
# - Bulk import jobs: one per account, sequential + delayed, pause/resume/stop
# - Single-address import, list discovery, subscriber browsing/removal
#
# IMPORTANT: Import ONLY addresses that opted in to the destination list.

import os
import uuid
import threading
from typing import Optional

from flask import Flask, request, jsonify, make_response
from flask_sqlalchemy import SQLAlchemy

import list_api
from import_jobs import (
    JobRunner,
    JobTicker,
    IMPORT_TICK_S,
    _env_int,
    export_emails,
    job_to_dict,
    now_iso,
)

# ----------------------------
# App / DB
# ----------------------------
app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DB_URL", "sqlite:///importer.db")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "change-me-please")

# Request threads, ticker and workers never share a connection, but keep
# SQLite usable from any of them (dev/testing).
if str(app.config["SQLALCHEMY_DATABASE_URI"]).startswith("sqlite:"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"check_same_thread": False}}

db = SQLAlchemy(app)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "y"}


IMPORT_TICKER_ENABLED = _env_bool("IMPORT_TICKER_ENABLED", True)
DEFAULT_DELAY_S = max(_env_int("DEFAULT_DELAY_S", 2), 0)
SUBSCRIBERS_PAGE_MAX = 200


# ----------------------------
# Models
# ----------------------------
def new_account_id() -> str:
    return uuid.uuid4().hex[:22]


class Account(db.Model):
    id = db.Column(db.String(32), primary_key=True, default=new_account_id)
    name = db.Column(db.String(120), nullable=False)

    # Remote list API (WordPress REST + application password)
    site_url = db.Column(db.String(255), nullable=False)
    username = db.Column(db.String(255), nullable=False)
    app_password = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="unchecked")  # valid/invalid/unchecked
    validation_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.String(32), default=now_iso)

    def credentials(self) -> dict:
        return {"site_url": self.site_url, "username": self.username, "app_password": self.app_password}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "siteUrl": self.site_url,
            "username": self.username,
            "status": self.status,
            "validationMessage": self.validation_message,
            "created_at": self.created_at,
        }


def init_db():
    with app.app_context():
        db.create_all()


def _get_account(account_id: str) -> Optional[Account]:
    aid = (account_id or "").strip()
    if not aid:
        return None
    return db.session.get(Account, aid)


# ----------------------------
# Bulk import runner (process-wide)
# ----------------------------
def submit_subscriber(creds: Optional[dict], email: str, list_id: Optional[str] = None):
    """Gateway handed to the runner; resolved at call time so it can be swapped."""
    return list_api.add_subscriber(creds, email, list_id)


RUNNER = JobRunner(submit_subscriber)
TICKER: Optional[JobTicker] = None
_TICKER_LOCK = threading.Lock()


def start_ticker_if_needed() -> None:
    global TICKER
    if not IMPORT_TICKER_ENABLED:
        return
    with _TICKER_LOCK:
        if TICKER is not None and TICKER.is_alive():
            return
        TICKER = JobTicker(RUNNER, IMPORT_TICK_S)
        TICKER.start()


def stop_background(timeout: float = 2.0) -> None:
    """Stop the ticker and the runner's worker pool (process exit)."""
    global TICKER
    with _TICKER_LOCK:
        if TICKER is not None:
            TICKER.stop(timeout)
            TICKER = None
    RUNNER.shutdown(wait=False)


def _job_payload(account_id: str, result_filter: str = "all") -> Optional[dict]:
    job = RUNNER.get_job(account_id)
    if not job:
        return None
    return job_to_dict(job, RUNNER.now(), result_filter=result_filter)


def _upstream_error(data) -> tuple:
    status = 502
    if isinstance(data, dict):
        try:
            st = int(data.get("status") or 0)
        except (TypeError, ValueError):
            st = 0
        if 400 <= st <= 599:
            status = st
    return jsonify(data if data is not None else {"message": "An internal server error occurred."}), status


# ----------------------------
# API: health
# ----------------------------
@app.get("/health")
def health():
    return jsonify({
        "ok": True,
        "server_time_utc": now_iso(),
        "jobs": len(RUNNER.get_all_jobs()),
        "ticker": bool(TICKER is not None and TICKER.is_alive()),
    })


# ----------------------------
# API: accounts
# ----------------------------
@app.get("/api/accounts")
def api_accounts_list():
    accounts = Account.query.order_by(Account.created_at.asc()).all()
    return jsonify([a.to_dict() for a in accounts])


@app.post("/api/accounts")
def api_accounts_create():
    data = request.get_json(silent=True) or request.form or {}
    name = str(data.get("name") or "").strip()
    site_url = str(data.get("siteUrl") or data.get("site_url") or "").strip().rstrip("/")
    username = str(data.get("username") or "").strip()
    app_password = str(data.get("appPassword") or data.get("app_password") or "").strip()

    if not name or not site_url or not username or not app_password:
        return jsonify({"message": "Name, site URL, username and application password are required."}), 400

    acc = Account(name=name, site_url=site_url, username=username, app_password=app_password)
    acc.status, acc.validation_message = list_api.validate_credentials(acc.credentials())
    db.session.add(acc)
    db.session.commit()
    return jsonify(acc.to_dict()), 201


@app.put("/api/accounts/<account_id>/validate")
def api_accounts_validate(account_id: str):
    acc = _get_account(account_id)
    if not acc:
        return jsonify({"message": "Account not found"}), 404
    acc.status, acc.validation_message = list_api.validate_credentials(acc.credentials())
    db.session.commit()
    return jsonify(acc.to_dict())


@app.delete("/api/accounts/<account_id>")
def api_accounts_delete(account_id: str):
    acc = _get_account(account_id)
    if acc:
        db.session.delete(acc)
        db.session.commit()
    # Job belongs to the account: drop it (any in-flight results go nowhere).
    RUNNER.clear_job_for_account(account_id)
    return jsonify({"message": "Account deleted successfully"})


# ----------------------------
# API: remote lists / subscribers
# ----------------------------
@app.get("/api/lists")
def api_lists():
    acc = _get_account(request.args.get("accountId") or "")
    if not acc:
        return jsonify({"message": "Account not found"}), 404
    ok, data = list_api.fetch_lists(acc.credentials())
    if not ok:
        return _upstream_error(data)
    return jsonify(data)


@app.post("/api/subscribers")
def api_subscriber_add():
    data = request.get_json(silent=True) or {}
    email = str(data.get("email") or "").strip()
    acc = _get_account(str(data.get("accountId") or ""))
    if not acc:
        return jsonify({"message": "Account not found"}), 404
    if not email:
        return jsonify({"message": "Email is required."}), 400

    ok, payload = list_api.add_subscriber(acc.credentials(), email, data.get("list_id"))
    if not ok:
        return _upstream_error(payload)
    return jsonify(payload)


@app.get("/api/all-subscribers")
def api_subscribers_list():
    acc = _get_account(request.args.get("accountId") or "")
    if not acc:
        return jsonify({"message": "Account not found"}), 404
    try:
        limit = max(1, min(SUBSCRIBERS_PAGE_MAX, int(request.args.get("limit") or 50)))
    except Exception:
        limit = 50
    try:
        offset = max(0, int(request.args.get("offset") or 0))
    except Exception:
        offset = 0

    ok, data = list_api.list_subscribers(acc.credentials(), limit=limit, offset=offset)
    if not ok:
        return _upstream_error(data)
    return jsonify({"data": data, "limit": limit, "offset": offset})


@app.delete("/api/subscriber")
def api_subscriber_delete():
    acc = _get_account(request.args.get("accountId") or "")
    if not acc:
        return jsonify({"message": "Account not found"}), 404
    email = (request.args.get("email") or "").strip()
    if not email:
        return jsonify({"message": "Email is required."}), 400

    ok, data = list_api.delete_subscriber(acc.credentials(), email)
    if not ok:
        return _upstream_error(data)
    return jsonify({"ok": True, "email": email, "response": data})


# ----------------------------
# API: bulk import jobs
# ----------------------------
@app.get("/api/jobs")
def api_jobs_list():
    now = RUNNER.now()
    jobs = RUNNER.get_all_jobs()
    return jsonify({aid: job_to_dict(job, now) for aid, job in jobs.items()})


@app.get("/api/jobs/<account_id>")
def api_job_get(account_id: str):
    payload = _job_payload(account_id, request.args.get("filter") or "all")
    if payload is None:
        return jsonify({"ok": False, "error": "not found"}), 404
    return jsonify(payload)


@app.post("/api/jobs/<account_id>/start")
def api_job_start(account_id: str):
    acc = _get_account(account_id)
    if not acc:
        return jsonify({"ok": False, "error": "account not found"}), 404

    data = request.get_json(silent=True) or request.form or {}
    emails = str(data.get("emails") or "")
    try:
        delay = max(0, int(data.get("delay") if data.get("delay") is not None else DEFAULT_DELAY_S))
    except (TypeError, ValueError):
        delay = DEFAULT_DELAY_S
    list_id = data.get("list_id")
    list_id = str(list_id).strip() if list_id is not None else None

    job = RUNNER.start(acc.id, acc.name, emails, delay, list_id, credentials=acc.credentials())
    if job is None:
        return jsonify({"ok": False, "error": "Please provide at least one email address."}), 400

    start_ticker_if_needed()
    return jsonify({"ok": True, "job": job_to_dict(job, RUNNER.now())})


@app.post("/api/jobs/<account_id>/control")
def api_job_control(account_id: str):
    """Pause/Resume/Stop an import job."""
    payload = request.get_json(silent=True) or request.form or {}
    action = str(payload.get("action") or "").strip().lower()

    if RUNNER.get_job(account_id) is None:
        return jsonify({"ok": False, "error": "not found"}), 404

    if action == "pause":
        changed = RUNNER.pause(account_id)
    elif action == "resume":
        changed = RUNNER.resume(account_id)
    elif action == "stop":
        changed = RUNNER.stop(account_id)
    else:
        return jsonify({"ok": False, "error": "invalid action"}), 400

    job = _job_payload(account_id)
    return jsonify({"ok": True, "changed": changed, "status": job["status_label"] if job else None})


@app.get("/api/jobs/<account_id>/export")
def api_job_export(account_id: str):
    job = RUNNER.get_job(account_id)
    if not job:
        return jsonify({"ok": False, "error": "not found"}), 404
    status = (request.args.get("status") or "all").strip().lower()
    if status not in {"all", "success", "error"}:
        status = "all"

    out = export_emails(job, status)
    body = (out + ("\n" if out else "")).encode("utf-8")
    safe_name = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in (job.name or account_id))
    resp = make_response(body)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    resp.headers["Content-Disposition"] = f'attachment; filename="import_export_{safe_name}_{status}.txt"'
    return resp


# ----------------------------
# Run
# ----------------------------
if __name__ == "__main__":
    init_db()
    start_ticker_if_needed()
    try:
        app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5008")), debug=False)
    finally:
        stop_background()
