"""membership_sync.provisioning

Account provisioning in the learning platform (Moodle REST web services).

Contract used by the reconciliation job:
  - find_by_email(email)                   → Account | None
  - create(record)                         → account id
  - update_credential(account_id, secret)

Admin operations also use find_by_username, update_account and
delete_account.

Errors are split so callers can choose retry vs skip:
  - ProvisioningError        : the platform rejected the request
                               (duplicate username/email, invalid field …)
  - ProvisioningUnavailable  : transport, HTTP, auth-token or non-JSON failure
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

import requests

from membership_sync.member_record import MemberRecord
from membership_sync.normalize import country_code, parse_name_parts, trim
from membership_sync.shared import ProvisioningError, ProvisioningUnavailable

log = logging.getLogger(__name__)

REST_PATH = "/webservice/rest/server.php"

# Moodle errorcodes that mean "our token/service is broken", not "bad data"
_AUTH_ERRORCODES = frozenset({"invalidtoken", "accessexception", "servicerequireslogin"})

_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class Account:
    id: int
    username: str | None = None
    email: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Account":
        return cls(
            id=int(payload["id"]),
            username=payload.get("username"),
            email=payload.get("email"),
            raw=payload,
        )


class AccountProvisioner(Protocol):
    def find_by_email(self, email: str) -> Account | None:
        ...

    def create(self, record: MemberRecord) -> int:
        ...

    def update_credential(self, account_id: int, new_credential: str) -> None:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_temporary_password(length: int = 12) -> str:
    """Random password containing at least one lower, upper, digit and symbol."""
    if length < 4:
        raise ValueError("temporary passwords need at least 4 characters")
    while True:
        candidate = "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(c.islower() for c in candidate)
            and any(c.isupper() for c in candidate)
            and any(c.isdigit() for c in candidate)
            and any(c in "!@#$%^&*" for c in candidate)
        ):
            return candidate


def flatten_params(params: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested dicts/lists into Moodle's users[0][email] form keys."""
    flat: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            flat.update(flatten_params({str(i): v for i, v in enumerate(value)}, name))
        elif value is None:
            continue
        else:
            flat[name] = str(value)
    return flat


def _classify_remote_error(payload: dict[str, Any]) -> Exception:
    message = str(payload.get("message") or payload.get("exception"))
    errorcode = str(payload.get("errorcode") or "")
    detail = f"{message} {payload.get('debuginfo') or ''}".lower()
    if errorcode in _AUTH_ERRORCODES:
        return ProvisioningUnavailable(f"learning platform refused token: {message}")
    if "username already exists" in detail:
        return ProvisioningError("duplicate_username", message)
    if "email address already exists" in detail or "email already exists" in detail:
        return ProvisioningError("duplicate_email", message)
    if "invalid email" in detail:
        return ProvisioningError("invalid_email", message)
    if "country" in detail:
        return ProvisioningError("invalid_country", message)
    if errorcode == "invalidparameter":
        return ProvisioningError("invalid_field", message)
    return ProvisioningError("remote_error", message)


def account_fields(record: MemberRecord, default_country: str | None = None) -> dict[str, str]:
    """Platform user fields derived from a member record (blank values omitted)."""
    first, last = parse_name_parts(record.latin_name)
    out: dict[str, Any] = {
        "firstname": first,
        "lastname": last or first,
        "alternatename": record.native_name,
        "email": record.email,
        "city": record.city,
        "country": country_code(record.country, default_country),
        "phone1": record.phone,
        "phone2": record.whatsapp,
        "institution": record.university,
        "department": record.major,
    }
    return {k: v for k, v in out.items() if trim(v) is not None}


# ---------------------------------------------------------------------------
# Moodle client
# ---------------------------------------------------------------------------

class MoodleClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        default_country: str | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + REST_PATH
        self._token = token
        self.timeout = timeout
        self.default_country = default_country
        self._http = http or requests.Session()

    def _call(self, wsfunction: str, params: dict[str, Any]) -> Any:
        data = {
            "wstoken": self._token,
            "wsfunction": wsfunction,
            "moodlewsrestformat": "json",
            **flatten_params(params),
        }
        try:
            resp = self._http.post(self._url, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Learning platform %s failed: %s", wsfunction, exc)
            raise ProvisioningUnavailable(f"{wsfunction}: {exc}") from exc
        if resp.status_code >= 400:
            body = resp.text or ""
            log.error(
                "Learning platform %s failed: %s %s", wsfunction, resp.status_code, body[:500]
            )
            raise ProvisioningUnavailable(f"{wsfunction}: HTTP {resp.status_code}")
        if not resp.content:
            return None
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProvisioningUnavailable(f"{wsfunction}: non-JSON response") from exc
        if isinstance(payload, dict) and payload.get("exception"):
            err = _classify_remote_error(payload)
            log.warning("Learning platform %s rejected request: %s", wsfunction, err)
            raise err
        return payload

    # -- lookups -------------------------------------------------------------

    def _find_by_field(self, fname: str, value: str) -> Account | None:
        result = self._call(
            "core_user_get_users_by_field", {"field": fname, "values": [value]}
        )
        if not result:
            return None
        return Account.from_payload(result[0])

    def find_by_email(self, email: str) -> Account | None:
        return self._find_by_field("email", email)

    def find_by_username(self, username: str) -> Account | None:
        return self._find_by_field("username", username.lower())

    # -- mutations -----------------------------------------------------------

    def create(self, record: MemberRecord) -> int:
        for fname in ("membership_number", "email", "latin_name", "password"):
            if not record.get(fname):
                raise ProvisioningError("invalid_field", f"{fname} is required")

        user = {
            "username": record.membership_number.lower(),
            "password": record.password,
            "auth": "manual",
            "createpassword": 0,
            "idnumber": record.membership_number,
            "description": (
                f"Member since {date.today().year}. "
                f"University: {record.university or 'N/A'}, Major: {record.major or 'N/A'}"
            ),
            **account_fields(record, self.default_country),
        }
        result = self._call("core_user_create_users", {"users": [user]})
        if not result:
            raise ProvisioningError("remote_error", "no account id returned")
        return int(result[0]["id"])

    def update_credential(self, account_id: int, new_credential: str) -> None:
        self._call(
            "core_user_update_users",
            {"users": [{"id": account_id, "password": new_credential}]},
        )

    def update_account(self, account_id: int, changes: dict[str, str]) -> None:
        if not changes:
            return
        self._call("core_user_update_users", {"users": [{"id": account_id, **changes}]})

    def delete_account(self, account_id: int) -> None:
        self._call("core_user_delete_users", {"userids": [account_id]})
