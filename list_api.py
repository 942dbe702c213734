import os
import json
import base64
from typing import Any, Dict, Optional, Tuple
from urllib.request import Request, urlopen
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode

from import_jobs import NO_LIST_VALUES

# =========================
# Config (ENV)
# =========================
# Accounts point at a WordPress site running the newsletter plugin.
# Every call goes to <site_url>/wp-json/<namespace>/... with an application password.
LIST_API_NAMESPACE = (os.getenv("LIST_API_NAMESPACE", "mailpoet/v1") or "mailpoet/v1").strip().strip("/")
LIST_API_VALIDATE_PATH = (os.getenv("LIST_API_VALIDATE_PATH", "wp/v2/users/me") or "wp/v2/users/me").strip().strip("/")
try:
    LIST_API_TIMEOUT_S = float((os.getenv("LIST_API_TIMEOUT_S", "20") or "20").strip())
except Exception:
    LIST_API_TIMEOUT_S = 20.0


def _clean_credentials(creds: Optional[dict]) -> Tuple[bool, dict, str]:
    c = creds or {}
    site_url = str(c.get("site_url") or "").strip().rstrip("/")
    username = str(c.get("username") or "").strip()
    app_password = str(c.get("app_password") or "").strip()
    missing = [k for k, v in (("site_url", site_url), ("username", username), ("app_password", app_password)) if not v]
    if missing:
        return False, {}, f"Missing account credentials: {', '.join(missing)}"
    return True, {"site_url": site_url, "username": username, "app_password": app_password}, ""


def _api_url(site_url: str, path: str, query: Optional[dict] = None) -> str:
    url = f"{site_url}/wp-json/{path.lstrip('/')}"
    if query:
        q = {k: v for k, v in query.items() if v is not None and v != ""}
        if q:
            url = f"{url}?{urlencode(q)}"
    return url


def _auth_headers(creds: dict) -> dict:
    token = base64.b64encode(f"{creds['username']}:{creds['app_password']}".encode("utf-8")).decode("ascii")
    return {
        "Authorization": f"Basic {token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def _decode_body(raw: bytes) -> Any:
    text = (raw or b"").decode("utf-8", errors="replace")
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text[:1000]}


def _request_json(
    method: str,
    url: str,
    *,
    headers: dict,
    body: Optional[dict] = None,
    timeout_s: Optional[float] = None,
) -> Tuple[bool, Any]:
    """Perform one JSON request against the remote list API.

    Never raises. On failure the second item is an error payload shaped like:
      - remote answered with an error: {"message", "status", "data"}
      - no response (DNS, refused, timeout): {"message", "request"}
      - anything else while building/sending: {"message", "error"}
    """
    data = json.dumps(body).encode("utf-8") if body is not None else None
    req = Request(url, data=data, headers=headers, method=method)
    try:
        with urlopen(req, timeout=timeout_s or LIST_API_TIMEOUT_S) as resp:
            return True, _decode_body(resp.read())
    except HTTPError as e:
        try:
            payload = _decode_body(e.read())
        except Exception:
            payload = {}
        return False, {
            "message": "List API returned an error.",
            "status": int(getattr(e, "code", 0) or 0),
            "data": payload,
        }
    except URLError as e:
        return False, {
            "message": "Network error: No response received from the list API.",
            "request": str(getattr(e, "reason", e)),
        }
    except Exception as e:
        return False, {
            "message": "An unknown error occurred during the API request setup.",
            "error": str(e),
        }


def _call(
    creds: Optional[dict],
    method: str,
    path: str,
    *,
    query: Optional[dict] = None,
    body: Optional[dict] = None,
) -> Tuple[bool, Any]:
    ok, clean, err = _clean_credentials(creds)
    if not ok:
        return False, {"message": err}
    url = _api_url(clean["site_url"], path, query)
    return _request_json(method, url, headers=_auth_headers(clean), body=body)


# =========================
# Operations
# =========================
def validate_credentials(creds: Optional[dict]) -> Tuple[str, str]:
    """Check connectivity + auth. Returns (status, validation_message).

    status is "valid" or "invalid"; the message is pretty JSON for display.
    """
    ok, data = _call(creds, "GET", LIST_API_VALIDATE_PATH)
    if ok:
        msg = {
            "message": "Credentials are valid and connected successfully to the site.",
            "user": data.get("name") if isinstance(data, dict) else None,
            "originalResponse": data,
        }
        return "valid", json.dumps(msg, indent=2, default=str)
    return "invalid", json.dumps(data, indent=2, default=str)


def _unwrap(data: Any) -> Any:
    # Plugin endpoints answer either a bare payload or {"data": payload}.
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    return data


def fetch_lists(creds: Optional[dict]) -> Tuple[bool, Any]:
    ok, data = _call(creds, "GET", f"{LIST_API_NAMESPACE}/lists")
    if not ok:
        return ok, data
    items = _unwrap(data)
    if not isinstance(items, list):
        return True, []
    out = []
    for it in items:
        if not isinstance(it, dict) or it.get("id") is None:
            continue
        out.append({"id": str(it.get("id")), "name": str(it.get("name") or it.get("id"))})
    return True, out


def add_subscriber(creds: Optional[dict], email: str, list_id: Optional[str] = None) -> Tuple[bool, Any]:
    """Register one address with the remote list. Used by the bulk runner as its gateway."""
    body: Dict[str, Any] = {"email": (email or "").strip()}
    lid = (list_id or "").strip() if isinstance(list_id, str) else list_id
    if lid not in NO_LIST_VALUES and lid is not None:
        body["lists"] = [lid]
    return _call(creds, "POST", f"{LIST_API_NAMESPACE}/subscribers", body=body)


def list_subscribers(creds: Optional[dict], limit: int = 50, offset: int = 0) -> Tuple[bool, Any]:
    limit = max(1, min(int(limit or 50), 500))
    offset = max(0, int(offset or 0))
    ok, data = _call(creds, "GET", f"{LIST_API_NAMESPACE}/subscribers", query={"limit": limit, "offset": offset})
    if not ok:
        return ok, data
    items = _unwrap(data)
    return True, items if isinstance(items, list) else []


def delete_subscriber(creds: Optional[dict], email: str) -> Tuple[bool, Any]:
    e = (email or "").strip()
    if not e:
        return False, {"message": "Email is required."}
    return _call(creds, "DELETE", f"{LIST_API_NAMESPACE}/subscribers", query={"email": e})
