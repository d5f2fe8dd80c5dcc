import csv
import io
import json
import os
import re
import secrets
import smtplib
import ssl
import string
import threading
import time
from collections import defaultdict, deque
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from pathlib import Path

import requests
import stripe
from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    abort,
    current_app,
    g,
    jsonify,
    request,
    session,
)
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from sqlalchemy import UniqueConstraint, event, or_
from sqlalchemy.exc import IntegrityError

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

load_dotenv()

db = SQLAlchemy()

PLATFORM_CURRENCY_DEFAULT = "bdt"

DASHBOARD_STATS_CACHE_KEY = "_dashboard_stats_cache"
DASHBOARD_STATS_CACHE_SECONDS_DEFAULT = 10.0

POLLING_SERVER_TIMEOUT_DEFAULT = 30.0
BANDWIDTH_WINDOW_SIZE_DEFAULT = 20
BANDWIDTH_POLL_SECONDS_DEFAULT = 5
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
BILL_DUE_DAYS_DEFAULT = 15
TRIAL_DAYS_DEFAULT = 14

SESSION_USER_KEY = "user_id"
PORTAL_SESSION_KEY = "portal_customer_id"
RESELLER_SESSION_KEY = "reseller_id"
TENANT_HEADER = "X-Tenant-Id"

USER_ROLES = ["super_admin", "admin", "operator", "staff", "viewer"]
DEFAULT_USER_ROLE = "viewer"

TENANT_STATUS_OPTIONS = ["pending", "trial", "active", "suspended", "cancelled"]
SUBSCRIPTION_STATUS_OPTIONS = ["active", "expired", "cancelled", "pending"]
BILLING_CYCLE_DAYS = {"monthly": 30, "yearly": 365}
PLATFORM_PAYMENT_METHODS = ["sslcommerz", "bkash", "rocket", "nagad", "manual", "stripe"]
PLATFORM_PAYMENT_STATUS_OPTIONS = ["pending", "completed", "failed", "refunded"]

TENANT_MODULES = [
    "olt_care",
    "billing",
    "sms_alerts",
    "email_alerts",
    "api_access",
    "custom_domain",
    "white_label",
    "advanced_monitoring",
    "multi_user",
]
ALWAYS_ENABLED_MODULE = "olt_care"

CUSTOMER_STATUS_OPTIONS = ["active", "expired", "suspended", "pending", "cancelled"]
DISABLED_CUSTOMER_STATUSES = {"suspended", "cancelled"}
BILL_STATUS_OPTIONS = ["unpaid", "paid", "partial", "overdue", "cancelled"]
CUSTOMER_PAYMENT_METHODS = ["cash", "bkash", "nagad", "rocket", "bank", "card", "online"]
ONLINE_COLLECTOR_LABEL = "Online/Self"

TICKET_STATUS_OPTIONS = ["open", "in_progress", "waiting", "resolved", "closed"]
TICKET_PRIORITY_OPTIONS = ["low", "medium", "high", "urgent"]

RESELLER_TRANSACTION_TYPES = [
    "recharge",
    "deduction",
    "commission",
    "refund",
    "transfer_in",
    "transfer_out",
    "customer_payment",
    "deposit",
    "withdrawal",
]
COMMISSION_TYPES = ["percentage", "flat"]

SMS_PROVIDERS = ["smsnoc", "mimsms", "sslwireless"]
SMS_SENDER_ID_DEFAULT = "ISPPOINT"
SMS_GATEWAY_DISABLED_MESSAGE = "SMS gateway not configured or disabled"
SMS_TEMPLATE_TYPES = [
    "bill_reminder",
    "payment_received",
    "expiry_warning",
    "welcome",
    "custom",
]
SMS_CAMPAIGN_TARGETS = ["all", "active", "expired", "due", "area"]

OLT_BRANDS = ["ZTE", "Huawei", "Fiberhome", "Nokia", "BDCOM", "VSOL", "Other"]
DEVICE_STATUS_OPTIONS = ["online", "offline", "warning", "unknown"]
ALERT_TYPES = ["onu_offline", "power_drop", "olt_unreachable", "high_latency"]
ALERT_SEVERITIES = ["critical", "warning", "info"]
POWER_DROP_WARNING_DBM = -27.0
POWER_DROP_CRITICAL_DBM = -30.0

PURCHASE_ORDER_STATUS_OPTIONS = ["pending", "received", "cancelled"]
POS_SALE_STATUS_OPTIONS = ["completed", "partial", "cancelled"]
WALK_IN_CUSTOMER_NAME = "Walk-in Customer"

CUSTOMER_IMPORT_COLUMNS = [
    "name",
    "phone",
    "email",
    "address",
    "pppoe_username",
    "package",
    "area",
    "monthly_bill",
]

DEFAULT_PLATFORM_PACKAGES = [
    {
        "name": "Starter",
        "description": "Single OLT monitoring for small operators.",
        "price_monthly_cents": 99900,
        "price_yearly_cents": 999000,
        "max_olts": 1,
        "max_users": 1,
        "max_onus": 256,
        "features": {"olt_care": True, "billing": False, "sms_alerts": False},
        "sort_order": 1,
    },
    {
        "name": "Professional",
        "description": "Monitoring with billing, POS and SMS alerts.",
        "price_monthly_cents": 249900,
        "price_yearly_cents": 2499000,
        "max_olts": 5,
        "max_users": 5,
        "max_onus": 2048,
        "features": {
            "olt_care": True,
            "billing": True,
            "sms_alerts": True,
            "email_alerts": True,
            "multi_user": True,
        },
        "sort_order": 2,
    },
    {
        "name": "Enterprise",
        "description": "Every module with white label and API access.",
        "price_monthly_cents": 599900,
        "price_yearly_cents": 5999000,
        "max_olts": 50,
        "max_users": 50,
        "max_onus": None,
        "features": {module: True for module in TENANT_MODULES},
        "sort_order": 3,
    },
]

DEFAULT_SMS_TEMPLATES = [
    {
        "name": "Bill Reminder",
        "template_type": "bill_reminder",
        "message": (
            "Dear {{customer_name}}, your bill of {{amount}} BDT is due on "
            "{{due_date}}. Please pay to avoid disconnection."
        ),
        "variables": ["customer_name", "amount", "due_date"],
    },
    {
        "name": "Payment Received",
        "template_type": "payment_received",
        "message": (
            "Dear {{customer_name}}, we received your payment of {{amount}} BDT. "
            "Your connection is valid until {{expiry_date}}."
        ),
        "variables": ["customer_name", "amount", "expiry_date"],
    },
    {
        "name": "Expiry Warning",
        "template_type": "expiry_warning",
        "message": (
            "Dear {{customer_name}}, your {{package_name}} package expires on "
            "{{expiry_date}}. Recharge now to stay connected."
        ),
        "variables": ["customer_name", "package_name", "expiry_date"],
    },
    {
        "name": "Welcome",
        "template_type": "welcome",
        "message": (
            "Welcome {{customer_name}}! Your {{package_name}} connection is now "
            "active. Customer ID: {{customer_code}}."
        ),
        "variables": ["customer_name", "package_name", "customer_code"],
    },
]

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}
TEMPLATE_VARIABLE_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")
VALID_BD_PHONE_PATTERN = re.compile(r"^8801[3-9]\d{8}$")
MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


class ValidationError(RuntimeError):
    """Raised when submitted data cannot be accepted."""


class PollingServerError(RuntimeError):
    """Raised when the polling server is unreachable or responds with an error."""


class SmsGatewayError(RuntimeError):
    """Raised when an SMS gateway rejects a message."""

    def __init__(self, message: str, response: object | None = None):
        super().__init__(message)
        self.response = response


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands timestamps back without tzinfo; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def slugify_segment(value: str) -> str:
    if not value:
        return ""
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def generate_password(length: int = 12) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def _coerce_int(value: object | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError):
                return None
    return None


def _coerce_float(value: object | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:
        return None
    return result


def parse_date(value: object | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = str(value).strip()
    if not cleaned:
        return None
    try:
        return datetime.strptime(cleaned[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError("Please use the YYYY-MM-DD format for dates.") from exc


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    cleaned = str(value).strip()
    if not cleaned:
        return None
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        timestamp = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


def parse_amount_cents(
    raw: object | None, *, field: str = "amount", required: bool = True
) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise ValidationError(f"{field.replace('_', ' ').capitalize()} is required.")
        return 0

    try:
        amount_decimal = Decimal(str(raw).strip()).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Please provide a valid {field.replace('_', ' ')}.") from exc
    if not amount_decimal.is_finite():
        raise ValidationError(f"Please provide a valid {field.replace('_', ' ')}.")

    amount_cents = int(amount_decimal * 100)
    if amount_cents < 0:
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} must not be negative.")
    return amount_cents


def format_cents(cents: int | None) -> str:
    if cents is None:
        cents = 0
    amount = (Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{amount:,.2f}"


def month_bounds(month: str | None) -> tuple[date, date]:
    """Return the first and last day of a ``YYYY-MM`` month (defaults to this month)."""
    if not month:
        today = date.today()
        year, month_number = today.year, today.month
    else:
        match = MONTH_PATTERN.match(month.strip())
        if not match:
            raise ValidationError("Please use the YYYY-MM format for months.")
        year, month_number = int(match.group(1)), int(match.group(2))
        if not 1 <= month_number <= 12:
            raise ValidationError("Please use the YYYY-MM format for months.")

    start = date(year, month_number, 1)
    if month_number == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month_number + 1, 1)
    return start, next_month - timedelta(days=1)


def day_range(start: date, end: date) -> tuple[datetime, datetime]:
    """Timestamps spanning ``start`` 00:00 up to (excluding) the day after ``end``."""
    begin = datetime.combine(start, datetime.min.time(), tzinfo=UTC)
    finish = datetime.combine(end + timedelta(days=1), datetime.min.time(), tzinfo=UTC)
    return begin, finish


def resolve_path(record: object, path: str) -> object | None:
    current: object | None = record
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def filter_records(
    records: list,
    search: str | None = None,
    fields: list[str] | tuple[str, ...] = (),
    filters: dict[str, object] | None = None,
) -> list:
    """Case-insensitive search across dotted ``fields`` plus equality filters.

    Filter values of ``"all"``, ``""`` and ``None`` are ignored.
    """
    needle = (search or "").strip().lower()
    active_filters = {
        key: value
        for key, value in (filters or {}).items()
        if value is not None and str(value).strip() not in {"", "all"}
    }

    results = []
    for record in records:
        if needle:
            matched = False
            for field in fields:
                value = resolve_path(record, field)
                if value is not None and needle in str(value).lower():
                    matched = True
                    break
            if not matched:
                continue

        keep = True
        for key, expected in active_filters.items():
            actual = resolve_path(record, key)
            if actual is None or str(actual) != str(expected):
                keep = False
                break
        if keep:
            results.append(record)
    return results


def _page_window(total: int, page: int | None, page_size: int | None) -> tuple[int, int, int]:
    size = page_size if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
    pages = max(1, (total + size - 1) // size)
    current = page if page and page > 0 else 1
    current = min(current, pages)
    return current, size, pages


def paginate_items(items: list, page: int | None = 1, page_size: int | None = None) -> dict:
    current, size, pages = _page_window(len(items), page, page_size)
    start = (current - 1) * size
    return {
        "items": items[start : start + size],
        "page": current,
        "page_size": size,
        "total": len(items),
        "pages": pages,
    }


def paginate_query(query, page: int | None = 1, page_size: int | None = None) -> dict:
    total = query.order_by(None).count()
    current, size, pages = _page_window(total, page, page_size)
    rows = query.offset((current - 1) * size).limit(size).all()
    return {
        "items": rows,
        "page": current,
        "page_size": size,
        "total": total,
        "pages": pages,
    }


def page_args() -> tuple[int, int]:
    default_size = int(current_app.config.get("DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE))
    max_size = int(current_app.config.get("MAX_PAGE_SIZE", MAX_PAGE_SIZE))
    page = _coerce_int(request.args.get("page")) or 1
    page_size = _coerce_int(request.args.get("page_size")) or default_size
    page_size = max(1, min(page_size, max_size))
    return page, page_size


def normalize_phone_number(raw: str | None) -> str:
    """Normalize a Bangladeshi mobile number to the ``880XXXXXXXXXX`` form."""
    cleaned = re.sub(r"[^\d+]", "", raw or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not cleaned:
        return ""

    if cleaned.startswith("880"):
        return cleaned
    if cleaned.startswith("0"):
        return f"880{cleaned[1:]}"
    if len(cleaned) == 10 and cleaned.startswith("1"):
        return f"880{cleaned}"
    return cleaned


def format_phone_display(raw: str | None) -> str:
    normalized = normalize_phone_number(raw)
    if normalized.startswith("880"):
        return f"0{normalized[3:]}"
    return normalized


def is_valid_bd_phone(raw: str | None) -> bool:
    return bool(VALID_BD_PHONE_PATTERN.match(normalize_phone_number(raw)))


def render_template_text(text: str, context: dict[str, object]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            return match.group(0)
        return str(context[key])

    return TEMPLATE_VARIABLE_PATTERN.sub(_replace, text or "")


def classify_power(power: float | None, kind: str = "rx") -> str:
    if power is None:
        return "n/a"
    if kind == "tx":
        return "good" if 0.5 <= power <= 5 else "fair"
    if power >= -20:
        return "excellent"
    if power >= -24:
        return "good"
    if power >= -27:
        return "fair"
    return "poor"


def normalize_polling_server_url(raw: str | None) -> str:
    cleaned = (raw or "").strip().rstrip("/")
    if cleaned.lower().endswith("/api"):
        cleaned = cleaned[:-4]
    return cleaned.rstrip("/")


def summarize_http_error(status: int, text: str | None) -> str:
    body = (text or "").strip()

    if status == 0:
        if "Request timeout" in body:
            return "Request timed out. Check if the polling server is running."
        if "Network error" in body:
            return "Network error. Check your connection and polling server URL."
        return body or "Failed to connect to polling server."

    if not body:
        return f"Request failed (HTTP {status})"

    lowered = body.lower()
    if lowered.startswith("<!doctype") or "<html" in lowered:
        return f"Polling server error (HTTP {status}). Check backend service & Nginx proxy."

    if len(body) > 180:
        return body[:180] + "…"
    return body


def fetch_json_safe(
    method: str,
    url: str,
    *,
    payload: dict | None = None,
    timeout: float = POLLING_SERVER_TIMEOUT_DEFAULT,
) -> tuple[bool, int, object | None, str]:
    """Perform a request and return ``(ok, status, data, text)`` without raising.

    Transport failures are reported as status ``0`` with a descriptive text.
    """
    try:
        response = requests.request(
            method,
            url,
            json=payload,
            headers={"accept": "application/json"},
            timeout=timeout,
        )
    except requests.Timeout:
        return False, 0, None, "Request timeout"
    except requests.RequestException as exc:
        return False, 0, None, f"Network error: {exc}"

    text_body = response.text or ""
    try:
        data = response.json()
    except ValueError:
        data = None

    return response.ok, response.status_code, data, text_body


class PollingServerClient:
    """Thin client for the OLT/MikroTik polling server HTTP API."""

    def __init__(self, base_url: str, *, timeout: float = POLLING_SERVER_TIMEOUT_DEFAULT):
        self.base_url = normalize_polling_server_url(base_url)
        self.timeout = timeout

        if not self.base_url:
            raise PollingServerError("Polling server URL is not configured.")

    def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.base_url}/api/{path.lstrip('/')}"
        ok, status, data, text_body = fetch_json_safe(
            method, url, payload=payload, timeout=self.timeout
        )
        if not ok:
            message = None
            if isinstance(data, dict):
                message = data.get("error") or data.get("message")
            raise PollingServerError(message or summarize_http_error(status, text_body))
        if not isinstance(data, dict):
            raise PollingServerError("Polling server returned an invalid JSON payload.")
        return data

    @staticmethod
    def router_payload(router: "MikroTikRouter") -> dict[str, object]:
        return {
            "ip": router.ip_address,
            "port": router.port,
            "username": router.username,
            "password": router.password,
        }

    def poll_olt(self, olt_id: int | str) -> dict:
        return self._call("POST", f"poll/{olt_id}")

    def test_connection(self, payload: dict) -> dict:
        return self._call("POST", "test-connection", payload)

    def test_mikrotik(self, router: "MikroTikRouter") -> dict:
        return self._call("POST", "test-mikrotik", {"mikrotik": self.router_payload(router)})

    def device_health(self) -> dict:
        return self._call("GET", "device-health")

    def pppoe_status(self, router: "MikroTikRouter", username: str) -> dict:
        return self._call(
            "POST",
            "mikrotik/pppoe/status",
            {"mikrotik": self.router_payload(router), "username": username},
        )

    def pppoe_bandwidth(self, router: "MikroTikRouter", username: str) -> dict:
        return self._call(
            "POST",
            "mikrotik/pppoe/bandwidth",
            {"mikrotik": self.router_payload(router), "username": username},
        )


def _bits_to_mbps(value: object | None) -> float:
    number = _coerce_float(value)
    if number is None:
        return 0.0
    return round(number / 1_000_000, 3)


class BandwidthWindow:
    """Rolling per-key buffers of the most recent bandwidth samples."""

    def __init__(self, size: int = BANDWIDTH_WINDOW_SIZE_DEFAULT):
        self.size = max(1, int(size))
        self._windows: dict[object, deque] = {}
        self._lock = threading.Lock()

    def append(self, key: object, point: dict[str, object]) -> list[dict[str, object]]:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = deque(maxlen=self.size)
                self._windows[key] = window
            window.append(point)
            return list(window)

    def points(self, key: object) -> list[dict[str, object]]:
        with self._lock:
            return list(self._windows.get(key, ()))

    def clear(self, key: object | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


def init_stripe(app: Flask) -> None:
    secret_key = app.config.get("STRIPE_SECRET_KEY")
    stripe.api_key = secret_key or None


def describe_stripe_error(error: StripeError) -> str:
    message = getattr(error, "user_message", None) or getattr(error, "message", None)
    if message:
        return message
    return "An unexpected payment processor error occurred."


def _metadata_dict(stripe_object: object) -> dict[str, str]:
    metadata = getattr(stripe_object, "metadata", None) or {}
    try:
        return dict(metadata)
    except TypeError:
        try:
            return dict(metadata.to_dict())  # type: ignore[attr-defined]
        except AttributeError:
            return {}


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    subdomain = db.Column(db.String(80), unique=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="trial")
    trial_ends_at = db.Column(db.DateTime(timezone=True))
    suspended_at = db.Column(db.DateTime(timezone=True))
    suspended_reason = db.Column(db.String(255))
    features = db.Column(db.JSON, nullable=False, default=dict)
    max_olts = db.Column(db.Integer, nullable=False, default=1)
    max_users = db.Column(db.Integer, nullable=False, default=1)
    polling_server_url = db.Column(db.String(255))
    stripe_customer_id = db.Column(db.String(64), unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    subscriptions = db.relationship(
        "Subscription", back_populates="tenant", cascade="all, delete-orphan"
    )
    users = db.relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "subdomain": self.subdomain,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "status": self.status,
            "trial_ends_at": _iso(self.trial_ends_at),
            "suspended_at": _iso(self.suspended_at),
            "suspended_reason": self.suspended_reason,
            "features": dict(self.features or {}),
            "max_olts": self.max_olts,
            "max_users": self.max_users,
            "polling_server_url": self.polling_server_url,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Tenant {self.name}>"


class PlatformPackage(db.Model):
    __tablename__ = "platform_packages"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    description = db.Column(db.Text)
    price_monthly_cents = db.Column(db.Integer, nullable=False, default=0)
    price_yearly_cents = db.Column(db.Integer, nullable=False, default=0)
    max_olts = db.Column(db.Integer, nullable=False, default=1)
    max_users = db.Column(db.Integer, nullable=False, default=1)
    max_onus = db.Column(db.Integer)
    features = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def price_for_cycle(self, billing_cycle: str) -> int:
        if billing_cycle == "yearly":
            return self.price_yearly_cents
        return self.price_monthly_cents

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_monthly_cents": self.price_monthly_cents,
            "price_yearly_cents": self.price_yearly_cents,
            "max_olts": self.max_olts,
            "max_users": self.max_users,
            "max_onus": self.max_onus,
            "features": dict(self.features or {}),
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PlatformPackage {self.name}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("platform_packages.id"), nullable=False)
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    status = db.Column(db.String(20), nullable=False, default="pending")
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    cancelled_at = db.Column(db.DateTime(timezone=True))
    cancel_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    tenant = db.relationship("Tenant", back_populates="subscriptions")
    package = db.relationship("PlatformPackage")

    def is_current(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.status == "active" and as_utc(self.ends_at) > now

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "package_id": self.package_id,
            "package_name": self.package.name if self.package else None,
            "billing_cycle": self.billing_cycle,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "auto_renew": self.auto_renew,
            "cancelled_at": _iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Subscription {self.id} tenant={self.tenant_id} {self.status}>"


class PlatformInvoice(db.Model):
    __tablename__ = "platform_invoices"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"))
    invoice_number = db.Column(db.String(40), nullable=False, unique=True)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="unpaid")
    due_date = db.Column(db.Date)
    paid_at = db.Column(db.DateTime(timezone=True))
    line_items = db.Column(db.JSON, nullable=False, default=list)
    stripe_payment_intent_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    subscription = db.relationship("Subscription")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "subscription_id": self.subscription_id,
            "invoice_number": self.invoice_number,
            "amount_cents": self.amount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "due_date": _iso(self.due_date),
            "paid_at": _iso(self.paid_at),
            "line_items": list(self.line_items or []),
            "created_at": _iso(self.created_at),
        }


class PlatformPayment(db.Model):
    __tablename__ = "platform_payments"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"))
    invoice_id = db.Column(db.Integer, db.ForeignKey("platform_invoices.id"))
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(20), nullable=False, default="manual")
    transaction_id = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="pending")
    notes = db.Column(db.Text)
    paid_at = db.Column(db.DateTime(timezone=True))
    verified_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    stripe_payment_intent_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    tenant = db.relationship("Tenant")
    invoice = db.relationship("PlatformInvoice")
    subscription = db.relationship("Subscription")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant.name if self.tenant else None,
            "subscription_id": self.subscription_id,
            "invoice_id": self.invoice_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "notes": self.notes,
            "paid_at": _iso(self.paid_at),
            "created_at": _iso(self.created_at),
        }


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(160))
    phone = db.Column(db.String(40))
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=DEFAULT_USER_ROLE)
    is_owner = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    tenant = db.relationship("Tenant", back_populates="users")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "role": self.role,
            "is_owner": self.is_owner,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "last_login_at": _iso(self.last_login_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email}>"


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80))
    entity_id = db.Column(db.Integer)
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": dict(self.details or {}),
            "created_at": _iso(self.created_at),
        }


class SMSGatewaySettings(db.Model):
    __tablename__ = "sms_gateway_settings"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(40), nullable=False, default="smsnoc")
    is_enabled = db.Column(db.Boolean, nullable=False, default=False)
    api_url = db.Column(db.String(255))
    api_key = db.Column(db.String(255))
    sender_id = db.Column(db.String(40))
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "is_enabled": self.is_enabled,
            "api_url": self.api_url,
            "api_key_set": bool(self.api_key),
            "sender_id": self.sender_id,
            "updated_at": _iso(self.updated_at),
        }


class SMSTemplate(db.Model):
    __tablename__ = "sms_templates"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    template_type = db.Column(db.String(40), nullable=False, default="custom")
    message = db.Column(db.Text, nullable=False)
    variables = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "template_type": self.template_type,
            "message": self.message,
            "variables": list(self.variables or []),
            "is_active": self.is_active,
            "is_system": self.is_system,
        }


class SMSLog(db.Model):
    __tablename__ = "sms_logs"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), index=True)
    campaign_id = db.Column(db.Integer, db.ForeignKey("sms_campaigns.id"))
    phone_number = db.Column(db.String(40), nullable=False)
    message = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    error_message = db.Column(db.String(500))
    provider_response = db.Column(db.JSON)
    sent_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "phone_number": self.phone_number,
            "message": self.message,
            "status": self.status,
            "error_message": self.error_message,
            "provider_response": self.provider_response,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
        }


class SMSCampaign(db.Model):
    __tablename__ = "sms_campaigns"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    message = db.Column(db.Text, nullable=False)
    target = db.Column(db.String(20), nullable=False, default="all")
    area_id = db.Column(db.Integer, db.ForeignKey("areas.id"))
    status = db.Column(db.String(20), nullable=False, default="draft")
    total_recipients = db.Column(db.Integer, nullable=False, default=0)
    sent_count = db.Column(db.Integer, nullable=False, default=0)
    failed_count = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "message": self.message,
            "target": self.target,
            "area_id": self.area_id,
            "status": self.status,
            "total_recipients": self.total_recipients,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


class Area(db.Model):
    __tablename__ = "areas"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    district = db.Column(db.String(120))
    upazila = db.Column(db.String(120))
    description = db.Column(db.Text)
    olt_id = db.Column(db.Integer, db.ForeignKey("olts.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "district": self.district,
            "upazila": self.upazila,
            "description": self.description,
            "olt_id": self.olt_id,
        }


class ISPPackage(db.Model):
    __tablename__ = "isp_packages"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    download_speed = db.Column(db.Integer, nullable=False, default=0)
    upload_speed = db.Column(db.Integer, nullable=False, default=0)
    speed_unit = db.Column(db.String(10), nullable=False, default="mbps")
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    validity_days = db.Column(db.Integer, nullable=False, default=30)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "download_speed": self.download_speed,
            "upload_speed": self.upload_speed,
            "speed_unit": self.speed_unit,
            "price_cents": self.price_cents,
            "validity_days": self.validity_days,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }


class Reseller(db.Model):
    __tablename__ = "resellers"
    __table_args__ = (UniqueConstraint("tenant_id", "username"),)

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("resellers.id"))
    area_id = db.Column(db.Integer, db.ForeignKey("areas.id"))
    code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(160), nullable=False)
    phone = db.Column(db.String(40))
    email = db.Column(db.String(255))
    address = db.Column(db.String(255))
    commission_type = db.Column(db.String(20), nullable=False, default="percentage")
    commission_value = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    max_customers = db.Column(db.Integer)
    username = db.Column(db.String(80))
    password_hash = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customers = db.relationship("Customer", back_populates="reseller")
    transactions = db.relationship(
        "ResellerTransaction", back_populates="reseller", cascade="all, delete-orphan"
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "area_id": self.area_id,
            "parent_id": self.parent_id,
            "commission_type": self.commission_type,
            "commission_value": str(self.commission_value),
            "balance_cents": self.balance_cents,
            "max_customers": self.max_customers,
            "username": self.username,
            "is_active": self.is_active,
        }


class ResellerTransaction(db.Model):
    __tablename__ = "reseller_transactions"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    reseller_id = db.Column(db.Integer, db.ForeignKey("resellers.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"))
    type = db.Column(db.String(20), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    reseller = db.relationship("Reseller", back_populates="transactions")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "reseller_id": self.reseller_id,
            "customer_id": self.customer_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


class Customer(db.Model):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_code"),)

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(160), nullable=False)
    phone = db.Column(db.String(40))
    alt_phone = db.Column(db.String(40))
    email = db.Column(db.String(255))
    address = db.Column(db.String(255))
    area_id = db.Column(db.Integer, db.ForeignKey("areas.id"))
    reseller_id = db.Column(db.Integer, db.ForeignKey("resellers.id"))
    package_id = db.Column(db.Integer, db.ForeignKey("isp_packages.id"))
    onu_id = db.Column(db.Integer, db.ForeignKey("onus.id"))
    onu_mac = db.Column(db.String(40))
    pon_port = db.Column(db.String(40))
    onu_index = db.Column(db.Integer)
    router_mac = db.Column(db.String(40))
    pppoe_username = db.Column(db.String(120))
    pppoe_password = db.Column(db.String(120))
    connection_date = db.Column(db.Date)
    expiry_date = db.Column(db.Date)
    monthly_bill_cents = db.Column(db.Integer, nullable=False, default=0)
    due_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="active")
    is_auto_disable = db.Column(db.Boolean, nullable=False, default=True)
    last_payment_date = db.Column(db.Date)
    notes = db.Column(db.Text)
    portal_password_hash = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    area = db.relationship("Area")
    package = db.relationship("ISPPackage")
    reseller = db.relationship("Reseller", back_populates="customers")
    bills = db.relationship(
        "CustomerBill", back_populates="customer", cascade="all, delete-orphan"
    )
    payments = db.relationship(
        "CustomerPayment", back_populates="customer", cascade="all, delete-orphan"
    )
    recharges = db.relationship(
        "CustomerRecharge", back_populates="customer", cascade="all, delete-orphan"
    )

    @property
    def can_collect(self) -> bool:
        return (self.due_amount_cents or 0) > 0

    def days_until_expiry(self, today: date | None = None) -> int | None:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - (today or date.today())).days

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_code": self.customer_code,
            "name": self.name,
            "phone": self.phone,
            "phone_display": format_phone_display(self.phone) if self.phone else None,
            "alt_phone": self.alt_phone,
            "email": self.email,
            "address": self.address,
            "area_id": self.area_id,
            "area_name": self.area.name if self.area else None,
            "reseller_id": self.reseller_id,
            "package_id": self.package_id,
            "package_name": self.package.name if self.package else None,
            "onu_id": self.onu_id,
            "onu_mac": self.onu_mac,
            "pon_port": self.pon_port,
            "onu_index": self.onu_index,
            "router_mac": self.router_mac,
            "pppoe_username": self.pppoe_username,
            "connection_date": _iso(self.connection_date),
            "expiry_date": _iso(self.expiry_date),
            "monthly_bill_cents": self.monthly_bill_cents,
            "due_amount_cents": self.due_amount_cents,
            "status": self.status,
            "is_auto_disable": self.is_auto_disable,
            "last_payment_date": _iso(self.last_payment_date),
            "notes": self.notes,
            "can_collect": self.can_collect,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Customer {self.customer_code} {self.name}>"


class CustomerBill(db.Model):
    __tablename__ = "customer_bills"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    bill_number = db.Column(db.String(40), nullable=False)
    billing_month = db.Column(db.String(7), nullable=False, index=True)
    bill_date = db.Column(db.Date, nullable=False, default=date.today)
    due_date = db.Column(db.Date)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="unpaid")
    paid_date = db.Column(db.Date)
    payment_method = db.Column(db.String(40))
    payment_reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="bills")

    @property
    def outstanding_cents(self) -> int:
        return max(0, (self.total_cents or 0) - (self.paid_amount_cents or 0))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "bill_number": self.bill_number,
            "billing_month": self.billing_month,
            "bill_date": _iso(self.bill_date),
            "due_date": _iso(self.due_date),
            "amount_cents": self.amount_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "outstanding_cents": self.outstanding_cents,
            "status": self.status,
            "paid_date": _iso(self.paid_date),
            "payment_method": self.payment_method,
        }


class CustomerPayment(db.Model):
    __tablename__ = "customer_payments"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    bill_id = db.Column(db.Integer, db.ForeignKey("customer_bills.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    transaction_id = db.Column(db.String(120))
    notes = db.Column(db.Text)
    collected_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    collected_by_name = db.Column(db.String(160))
    collected_by_type = db.Column(db.String(20), nullable=False, default="staff")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="payments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "bill_id": self.bill_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "payment_date": _iso(self.payment_date),
            "transaction_id": self.transaction_id,
            "notes": self.notes,
            "collected_by": self.collected_by,
            "collected_by_name": self.collected_by_name,
            "collected_by_type": self.collected_by_type,
        }


class CustomerRecharge(db.Model):
    __tablename__ = "customer_recharges"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    reseller_id = db.Column(db.Integer, db.ForeignKey("resellers.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    months = db.Column(db.Integer, nullable=False, default=1)
    old_expiry = db.Column(db.Date)
    new_expiry = db.Column(db.Date, nullable=False)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    collected_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    collected_by_type = db.Column(db.String(20), nullable=False, default="staff")
    status = db.Column(db.String(20), nullable=False, default="completed")
    notes = db.Column(db.Text)
    recharge_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="recharges")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "reseller_id": self.reseller_id,
            "amount_cents": self.amount_cents,
            "discount_cents": self.discount_cents,
            "months": self.months,
            "old_expiry": _iso(self.old_expiry),
            "new_expiry": _iso(self.new_expiry),
            "payment_method": self.payment_method,
            "collected_by_type": self.collected_by_type,
            "status": self.status,
            "recharge_date": _iso(self.recharge_date),
        }


class MultiCollection(db.Model):
    __tablename__ = "multi_collections"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    customer_count = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    notes = db.Column(db.Text)
    collected_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship(
        "MultiCollectionItem", back_populates="collection", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "total_amount_cents": self.total_amount_cents,
            "customer_count": self.customer_count,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class MultiCollectionItem(db.Model):
    __tablename__ = "multi_collection_items"

    id = db.Column(db.Integer, primary_key=True)
    collection_id = db.Column(
        db.Integer, db.ForeignKey("multi_collections.id"), nullable=False, index=True
    )
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    recharge_id = db.Column(db.Integer, db.ForeignKey("customer_recharges.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    months = db.Column(db.Integer, nullable=False, default=1)

    collection = db.relationship("MultiCollection", back_populates="items")

    def to_dict(self) -> dict[str, object]:
        return {
            "customer_id": self.customer_id,
            "recharge_id": self.recharge_id,
            "amount_cents": self.amount_cents,
            "months": self.months,
        }


class BillGeneration(db.Model):
    __tablename__ = "bill_generations"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    billing_month = db.Column(db.String(7), nullable=False)
    bills_count = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    generated_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "billing_month": self.billing_month,
            "bills_count": self.bills_count,
            "total_amount_cents": self.total_amount_cents,
            "created_at": _iso(self.created_at),
        }


class TicketCategory(db.Model):
    __tablename__ = "ticket_categories"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255))
    color = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "is_active": self.is_active,
        }


class SupportTicket(db.Model):
    __tablename__ = "support_tickets"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    ticket_number = db.Column(db.String(20), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"))
    category_id = db.Column(db.Integer, db.ForeignKey("ticket_categories.id"))
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"))
    resolution_notes = db.Column(db.Text)
    created_by_customer = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True))
    closed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer")
    category = db.relationship("TicketCategory")
    comments = db.relationship(
        "TicketComment",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketComment.id",
    )

    def to_dict(self, *, include_internal: bool = True) -> dict[str, object]:
        return {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "subject": self.subject,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "resolution_notes": self.resolution_notes,
            "resolved_at": _iso(self.resolved_at),
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "comments": [
                comment.to_dict()
                for comment in self.comments
                if include_internal or not comment.is_internal
            ],
        }


class TicketComment(db.Model):
    __tablename__ = "ticket_comments"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("support_tickets.id"), nullable=False, index=True
    )
    comment = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    author_name = db.Column(db.String(160))
    author_type = db.Column(db.String(20), nullable=False, default="staff")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("SupportTicket", back_populates="comments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "comment": self.comment,
            "is_internal": self.is_internal,
            "author_name": self.author_name,
            "author_type": self.author_type,
            "created_at": _iso(self.created_at),
        }


class InventoryCategory(db.Model):
    __tablename__ = "inventory_categories"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255))

    def to_dict(self) -> dict[str, object]:
        return {"id": self.id, "name": self.name, "description": self.description}


class InventoryItem(db.Model):
    __tablename__ = "inventory_items"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("inventory_categories.id"))
    name = db.Column(db.String(160), nullable=False)
    sku = db.Column(db.String(80))
    description = db.Column(db.Text)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_quantity = db.Column(db.Integer, nullable=False, default=5)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    sale_price_cents = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    category = db.relationship("InventoryCategory")

    @property
    def is_low_stock(self) -> bool:
        return (self.quantity or 0) <= (self.min_quantity or 0)

    @property
    def stock_value_cents(self) -> int:
        return (self.quantity or 0) * (self.unit_price_cents or 0)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "name": self.name,
            "sku": self.sku,
            "description": self.description,
            "quantity": self.quantity,
            "min_quantity": self.min_quantity,
            "unit_price_cents": self.unit_price_cents,
            "sale_price_cents": self.sale_price_cents,
            "is_low_stock": self.is_low_stock,
            "stock_value_cents": self.stock_value_cents,
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    company_name = db.Column(db.String(160))
    phone = db.Column(db.String(40))
    email = db.Column(db.String(255))
    address = db.Column(db.String(255))
    due_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "company_name": self.company_name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "due_cents": self.due_cents,
            "is_active": self.is_active,
        }


class PurchaseOrder(db.Model):
    __tablename__ = "purchase_orders"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    order_number = db.Column(db.String(20), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)
    order_date = db.Column(db.Date, nullable=False, default=date.today)
    status = db.Column(db.String(20), nullable=False, default="pending")
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    received_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    supplier = db.relationship("Supplier")
    items = db.relationship(
        "PurchaseOrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "order_date": _iso(self.order_date),
            "status": self.status,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "due_cents": max(0, self.total_cents - self.paid_amount_cents),
            "notes": self.notes,
            "received_at": _iso(self.received_at),
            "items": [item.to_dict() for item in self.items],
        }


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(
        db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True
    )
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False)
    description = db.Column(db.String(255))
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    order = db.relationship("PurchaseOrder", back_populates="items")
    item = db.relationship("InventoryItem")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_name": self.item.name if self.item else self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "received_quantity": self.received_quantity,
        }


class SupplierPayment(db.Model):
    __tablename__ = "supplier_payments"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "purchase_order_id": self.purchase_order_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference": self.reference,
            "notes": self.notes,
            "payment_date": _iso(self.payment_date),
        }


class InventoryLedger(db.Model):
    __tablename__ = "inventory_ledger"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    transaction_type = db.Column(db.String(20), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_value_cents = db.Column(db.Integer, nullable=False, default=0)
    stock_before = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)
    reference_type = db.Column(db.String(40))
    reference_id = db.Column(db.Integer)
    notes = db.Column(db.String(255))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_value_cents": self.total_value_cents,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class POSCustomer(db.Model):
    __tablename__ = "pos_customers"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(160), nullable=False)
    phone = db.Column(db.String(40))
    email = db.Column(db.String(255))
    address = db.Column(db.String(255))
    company_name = db.Column(db.String(160))
    due_cents = db.Column(db.Integer, nullable=False, default=0)
    total_purchase_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_code": self.customer_code,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "company_name": self.company_name,
            "due_cents": self.due_cents,
            "total_purchase_cents": self.total_purchase_cents,
            "is_active": self.is_active,
        }


class POSSale(db.Model):
    __tablename__ = "pos_sales"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(20), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("pos_customers.id"))
    customer_name = db.Column(db.String(160), nullable=False, default=WALK_IN_CUSTOMER_NAME)
    customer_phone = db.Column(db.String(40))
    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    due_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    payment_reference = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="completed")
    notes = db.Column(db.Text)
    sold_by = db.Column(db.Integer, db.ForeignKey("users.id"))

    customer = db.relationship("POSCustomer")
    items = db.relationship("POSSaleItem", back_populates="sale", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "sale_date": _iso(self.sale_date),
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "due_cents": self.due_cents,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "status": self.status,
            "notes": self.notes,
            "items": [item.to_dict() for item in self.items],
        }


class POSSaleItem(db.Model):
    __tablename__ = "pos_sale_items"

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("pos_sales.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"))
    item_name = db.Column(db.String(160), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    sale = db.relationship("POSSale", back_populates="items")

    def to_dict(self) -> dict[str, object]:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
        }


class POSPayment(db.Model):
    __tablename__ = "pos_payments"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("pos_customers.id"), nullable=False)
    sale_id = db.Column(db.Integer, db.ForeignKey("pos_sales.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(40), nullable=False, default="cash")
    reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    collected_by = db.Column(db.Integer, db.ForeignKey("users.id"))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference": self.reference,
            "notes": self.notes,
            "payment_date": _iso(self.payment_date),
        }


class OLT(db.Model):
    __tablename__ = "olts"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    brand = db.Column(db.String(20), nullable=False, default="Other")
    ip_address = db.Column(db.String(64), nullable=False)
    port = db.Column(db.Integer, nullable=False, default=23)
    username = db.Column(db.String(120))
    password = db.Column(db.String(255))
    location = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="unknown")
    total_ports = db.Column(db.Integer, nullable=False, default=8)
    active_ports = db.Column(db.Integer, nullable=False, default=0)
    last_polled = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    onus = db.relationship("ONU", back_populates="olt", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "brand": self.brand,
            "ip_address": self.ip_address,
            "port": self.port,
            "username": self.username,
            "location": self.location,
            "status": self.status,
            "total_ports": self.total_ports,
            "active_ports": self.active_ports,
            "last_polled": _iso(self.last_polled),
            "onu_count": len(self.onus),
        }


class ONU(db.Model):
    __tablename__ = "onus"
    __table_args__ = (UniqueConstraint("olt_id", "pon_port", "onu_index"),)

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    olt_id = db.Column(db.Integer, db.ForeignKey("olts.id"), nullable=False, index=True)
    pon_port = db.Column(db.String(40), nullable=False)
    onu_index = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(160))
    router_name = db.Column(db.String(160))
    mac_address = db.Column(db.String(40))
    serial_number = db.Column(db.String(80))
    pppoe_username = db.Column(db.String(120))
    rx_power = db.Column(db.Float)
    tx_power = db.Column(db.Float)
    status = db.Column(db.String(20), nullable=False, default="unknown")
    last_online = db.Column(db.DateTime(timezone=True))
    last_offline = db.Column(db.DateTime(timezone=True))
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    olt = db.relationship("OLT", back_populates="onus")
    readings = db.relationship(
        "PowerReading", back_populates="onu", cascade="all, delete-orphan"
    )

    @property
    def power_level(self) -> str:
        return classify_power(self.rx_power, "rx")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "olt_id": self.olt_id,
            "olt_name": self.olt.name if self.olt else None,
            "pon_port": self.pon_port,
            "onu_index": self.onu_index,
            "name": self.name,
            "router_name": self.router_name,
            "mac_address": self.mac_address,
            "serial_number": self.serial_number,
            "pppoe_username": self.pppoe_username,
            "rx_power": self.rx_power,
            "tx_power": self.tx_power,
            "power_level": self.power_level,
            "tx_level": classify_power(self.tx_power, "tx"),
            "status": self.status,
            "last_online": _iso(self.last_online),
            "last_offline": _iso(self.last_offline),
        }


class PowerReading(db.Model):
    __tablename__ = "power_readings"

    id = db.Column(db.Integer, primary_key=True)
    onu_id = db.Column(db.Integer, db.ForeignKey("onus.id"), nullable=False, index=True)
    rx_power = db.Column(db.Float)
    tx_power = db.Column(db.Float)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    onu = db.relationship("ONU", back_populates="readings")


class Alert(db.Model):
    __tablename__ = "alerts"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default="warning")
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text)
    device_id = db.Column(db.Integer)
    device_name = db.Column(db.String(160))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


class MikroTikRouter(db.Model):
    __tablename__ = "mikrotik_routers"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    ip_address = db.Column(db.String(64), nullable=False)
    port = db.Column(db.Integer, nullable=False, default=8728)
    username = db.Column(db.String(120), nullable=False)
    password = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="unknown")
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    last_synced = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "ip_address": self.ip_address,
            "port": self.port,
            "username": self.username,
            "status": self.status,
            "is_primary": self.is_primary,
            "last_synced": _iso(self.last_synced),
        }


# Child rows without a tenant_id go through their parents' ORM cascades.
TENANT_SCOPED_MODELS = [
    SMSLog,
    SMSCampaign,
    SMSTemplate,
    ActivityLog,
    PlatformPayment,
    PlatformInvoice,
    POSPayment,
    POSSale,
    POSCustomer,
    SupplierPayment,
    PurchaseOrder,
    InventoryLedger,
    InventoryItem,
    InventoryCategory,
    Supplier,
    SupportTicket,
    TicketCategory,
    MultiCollection,
    BillGeneration,
    CustomerRecharge,
    CustomerPayment,
    CustomerBill,
    ResellerTransaction,
    Customer,
    Reseller,
    Area,
    Alert,
    ONU,
    OLT,
    MikroTikRouter,
    ISPPackage,
]


def next_sequence_code(model, column, prefix: str, width: int, *filters) -> str:
    """Return ``prefix`` followed by the next free zero-padded sequence number."""
    sequence = model.query.filter(*filters).filter(column.like(f"{prefix}%")).count() + 1
    while True:
        candidate = f"{prefix}{sequence:0{width}d}"
        if model.query.filter(*filters).filter(column == candidate).first() is None:
            return candidate
        sequence += 1


def generate_customer_code(tenant_id: int) -> str:
    return next_sequence_code(
        Customer, Customer.customer_code, "C", 5, Customer.tenant_id == tenant_id
    )


def generate_pos_customer_code(tenant_id: int) -> str:
    return next_sequence_code(
        POSCustomer, POSCustomer.customer_code, "POS", 5, POSCustomer.tenant_id == tenant_id
    )


def generate_pos_invoice_number(tenant_id: int, today: date | None = None) -> str:
    today = today or date.today()
    return next_sequence_code(
        POSSale,
        POSSale.invoice_number,
        f"INV{today:%y%m}",
        5,
        POSSale.tenant_id == tenant_id,
    )


def generate_purchase_order_number(tenant_id: int, today: date | None = None) -> str:
    today = today or date.today()
    return next_sequence_code(
        PurchaseOrder,
        PurchaseOrder.order_number,
        f"PO{today:%y}",
        5,
        PurchaseOrder.tenant_id == tenant_id,
    )


def generate_ticket_number(tenant_id: int, today: date | None = None) -> str:
    today = today or date.today()
    return next_sequence_code(
        SupportTicket,
        SupportTicket.ticket_number,
        f"TKT{today:%y%m%d}",
        4,
        SupportTicket.tenant_id == tenant_id,
    )


def generate_reseller_code(tenant_id: int) -> str:
    return next_sequence_code(
        Reseller, Reseller.code, "R", 4, Reseller.tenant_id == tenant_id
    )


def generate_platform_invoice_number(today: date | None = None) -> str:
    today = today or date.today()
    return next_sequence_code(
        PlatformInvoice, PlatformInvoice.invoice_number, f"SUB{today:%Y%m}", 4
    )


def log_activity(
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    details: dict | None = None,
    tenant_id: int | None = None,
    user_id: int | None = None,
) -> ActivityLog:
    if tenant_id is None:
        tenant = g.get("tenant")
        tenant_id = tenant.id if tenant is not None else None
    if user_id is None:
        user = g.get("user")
        user_id = user.id if user is not None else None

    entry = ActivityLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
    )
    db.session.add(entry)
    return entry


def get_active_subscription(tenant: Tenant, now: datetime | None = None) -> Subscription | None:
    now = now or utcnow()
    return (
        Subscription.query.filter(
            Subscription.tenant_id == tenant.id,
            Subscription.status == "active",
            Subscription.ends_at > now,
        )
        .order_by(Subscription.ends_at.desc())
        .first()
    )


def resolve_tenant_limits(tenant: Tenant) -> dict[str, object]:
    subscription = get_active_subscription(tenant)
    if subscription is not None and subscription.package is not None:
        package = subscription.package
        return {
            "features": dict(package.features or {}),
            "max_olts": package.max_olts or 1,
            "max_users": package.max_users or 1,
            "max_onus": package.max_onus,
            "package_name": package.name,
            "subscription_active": True,
        }

    return {
        "features": dict(tenant.features or {}),
        "max_olts": tenant.max_olts or 1,
        "max_users": tenant.max_users or 1,
        "max_onus": None,
        "package_name": None,
        "subscription_active": False,
    }


def has_module_access(tenant: Tenant, module: str) -> bool:
    if module == ALWAYS_ENABLED_MODULE:
        return True
    features = resolve_tenant_limits(tenant)["features"]
    return features.get(module) is True


def evaluate_tenant_access(
    user: User | None, tenant: Tenant | None, now: datetime | None = None
) -> tuple[bool, str | None, str | None]:
    """Decide whether ``user`` may use ``tenant``; returns ``(allowed, reason, message)``."""
    if user is None:
        return False, "unauthenticated", "Login required."
    if user.is_super_admin:
        return True, None, None
    if tenant is None:
        return False, "no_tenant", "Your account is not linked to an ISP workspace."

    now = now or utcnow()

    if tenant.status == "pending":
        return False, "payment_required", "Complete your subscription payment to activate the account."
    if tenant.status == "suspended":
        reason = tenant.suspended_reason or "Contact support for details."
        return False, "suspended", f"Account suspended: {reason}"
    if tenant.status == "cancelled":
        return False, "cancelled", "This account has been cancelled."

    if tenant.status == "trial":
        trial_ends_at = as_utc(tenant.trial_ends_at)
        if trial_ends_at is not None and trial_ends_at < now:
            return False, "trial_expired", "Your trial has ended. Choose a package to continue."

    if tenant.status == "active" and tenant.subscriptions:
        subscriptions = tenant.subscriptions
        if not any(subscription.is_current(now) for subscription in subscriptions):
            has_expired = any(
                subscription.status == "expired"
                or (
                    subscription.status == "active"
                    and as_utc(subscription.ends_at) <= now
                )
                for subscription in subscriptions
            )
            if has_expired:
                return (
                    False,
                    "subscription_expired",
                    "Your subscription has expired. Renew to continue.",
                )

    return True, None, None


def create_platform_invoice(subscription: Subscription, *, description: str | None = None) -> PlatformInvoice:
    package = subscription.package
    label = description or (
        f"{package.name if package else 'Subscription'} ({subscription.billing_cycle})"
    )
    invoice = PlatformInvoice(
        tenant_id=subscription.tenant_id or subscription.tenant.id,
        subscription=subscription,
        invoice_number=generate_platform_invoice_number(),
        amount_cents=subscription.amount_cents,
        tax_cents=0,
        total_cents=subscription.amount_cents,
        status="unpaid",
        due_date=date.today() + timedelta(days=7),
        line_items=[
            {
                "description": label,
                "quantity": 1,
                "amount_cents": subscription.amount_cents,
            }
        ],
    )
    db.session.add(invoice)
    return invoice


def start_subscription(
    tenant: Tenant,
    package: PlatformPackage,
    billing_cycle: str = "monthly",
    *,
    activate: bool = True,
    starts_at: datetime | None = None,
) -> tuple[Subscription, PlatformInvoice]:
    if billing_cycle not in BILLING_CYCLE_DAYS:
        raise ValidationError("Billing cycle must be monthly or yearly.")

    now = utcnow()
    starts_at = starts_at or now
    if activate:
        for existing in tenant.subscriptions:
            if existing.status == "active":
                existing.status = "cancelled"
                existing.cancelled_at = now
                existing.cancel_reason = "Replaced by a new subscription"

    subscription = Subscription(
        tenant_id=tenant.id,
        tenant=tenant,
        package=package,
        billing_cycle=billing_cycle,
        status="active" if activate else "pending",
        amount_cents=package.price_for_cycle(billing_cycle),
        starts_at=starts_at,
        ends_at=starts_at + timedelta(days=BILLING_CYCLE_DAYS[billing_cycle]),
    )
    db.session.add(subscription)

    if activate:
        tenant.status = "active"
        tenant.suspended_at = None
        tenant.suspended_reason = None

    invoice = create_platform_invoice(subscription)
    return subscription, invoice


def expire_due_subscriptions(now: datetime | None = None) -> int:
    now = now or utcnow()
    expired = Subscription.query.filter(
        Subscription.status == "active", Subscription.ends_at <= now
    ).all()
    for subscription in expired:
        subscription.status = "expired"
    return len(expired)


def complete_platform_payment(payment: PlatformPayment, *, verified_by: int | None = None) -> None:
    now = utcnow()
    payment.status = "completed"
    payment.paid_at = now
    payment.verified_by = verified_by

    invoice = payment.invoice
    if invoice is not None:
        invoice.status = "paid"
        invoice.paid_at = now

    subscription = payment.subscription or (invoice.subscription if invoice else None)
    tenant = payment.tenant
    if subscription is not None and subscription.status == "pending":
        starts_at = as_utc(subscription.starts_at)
        if starts_at is None or starts_at < now:
            starts_at = now
        current = get_active_subscription(tenant, now)
        if current is not None and current.id != subscription.id:
            starts_at = max(starts_at, as_utc(current.ends_at))
        subscription.starts_at = starts_at
        subscription.ends_at = starts_at + timedelta(
            days=BILLING_CYCLE_DAYS.get(subscription.billing_cycle, 30)
        )
        subscription.status = "active"

    if tenant is not None and tenant.status in {"pending", "trial"}:
        tenant.status = "active"


def ensure_tenant_stripe_customer(tenant: Tenant) -> str | None:
    if not stripe_active():
        return None

    if tenant.stripe_customer_id:
        return tenant.stripe_customer_id

    customer = stripe.Customer.create(
        name=tenant.name,
        email=tenant.email,
        phone=tenant.phone,
        metadata={"tenant_id": str(tenant.id)},
    )
    tenant.stripe_customer_id = customer.id
    db.session.flush()
    return customer.id


def ensure_platform_payment_intent(
    invoice: PlatformInvoice, payment: PlatformPayment, tenant: Tenant
) -> "stripe.PaymentIntent | None":
    if not stripe_active():
        return None

    customer_id = ensure_tenant_stripe_customer(tenant)
    metadata = {
        "platform_invoice_id": str(invoice.id),
        "platform_payment_id": str(payment.id),
        "tenant_id": str(tenant.id),
    }
    payment_intent = stripe.PaymentIntent.create(
        amount=invoice.total_cents,
        currency=current_app.config.get("PLATFORM_CURRENCY", PLATFORM_CURRENCY_DEFAULT),
        customer=customer_id,
        description=f"Invoice {invoice.invoice_number}"[:220],
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
    )
    invoice.stripe_payment_intent_id = payment_intent.id
    payment.stripe_payment_intent_id = payment_intent.id
    return payment_intent


def _find_payment_for_intent(intent: object) -> PlatformPayment | None:
    metadata = _metadata_dict(intent)
    payment_id = _coerce_int(metadata.get("platform_payment_id"))
    if payment_id:
        payment = db.session.get(PlatformPayment, payment_id)
        if payment is not None:
            return payment
    intent_id = getattr(intent, "id", None)
    if not intent_id:
        return None
    return PlatformPayment.query.filter_by(stripe_payment_intent_id=intent_id).first()


def handle_stripe_event(event: object) -> bool:
    event_type = getattr(event, "type", "")
    data_object = getattr(getattr(event, "data", None), "object", None)
    if not data_object:
        return False

    payment = _find_payment_for_intent(data_object)
    if payment is None:
        return False

    if event_type == "payment_intent.succeeded":
        if payment.status != "completed":
            payment.transaction_id = getattr(data_object, "id", payment.transaction_id)
            complete_platform_payment(payment)
        return True

    if event_type == "payment_intent.payment_failed":
        last_error = getattr(data_object, "last_payment_error", None)
        payment.status = "failed"
        payment.notes = getattr(last_error, "message", None) or "Card payment failed"
        return True

    return False


def recharge_customer(
    customer: Customer,
    *,
    amount_cents: int,
    months: int = 1,
    payment_method: str = "cash",
    discount_cents: int = 0,
    notes: str | None = None,
    collected_by: User | None = None,
    collected_by_type: str = "staff",
    reseller: Reseller | None = None,
    today: date | None = None,
) -> CustomerRecharge:
    """Extend a customer's expiry by ``months`` package periods and record the payment.

    The extension starts from the current expiry when it is still in the future,
    otherwise from today. The customer ends up active with nothing due.
    """
    if months < 1:
        raise ValidationError("Recharge must cover at least one month.")
    if amount_cents < 0:
        raise ValidationError("Amount must not be negative.")

    today = today or date.today()
    validity_days = customer.package.validity_days if customer.package else 30
    validity_days = validity_days or 30
    old_expiry = customer.expiry_date
    base_date = old_expiry if old_expiry and old_expiry > today else today
    new_expiry = base_date + timedelta(days=validity_days * months)

    recharge = CustomerRecharge(
        tenant_id=customer.tenant_id,
        customer=customer,
        reseller_id=reseller.id if reseller else None,
        amount_cents=amount_cents,
        discount_cents=discount_cents,
        months=months,
        old_expiry=old_expiry,
        new_expiry=new_expiry,
        payment_method=payment_method,
        collected_by=collected_by.id if collected_by else None,
        collected_by_type=collected_by_type,
        notes=notes,
    )
    db.session.add(recharge)

    collector_name = None
    if collected_by is not None:
        collector_name = collected_by.full_name or collected_by.email
    elif reseller is not None:
        collector_name = reseller.name

    payment = CustomerPayment(
        tenant_id=customer.tenant_id,
        customer=customer,
        amount_cents=amount_cents,
        payment_method=payment_method,
        notes=notes or f"Recharge for {months} month(s)",
        collected_by=collected_by.id if collected_by else None,
        collected_by_name=collector_name,
        collected_by_type=collected_by_type,
    )
    db.session.add(payment)

    customer.expiry_date = new_expiry
    customer.status = "active"
    customer.due_amount_cents = 0
    customer.last_payment_date = today
    return recharge


def expire_customers(tenant_id: int, today: date | None = None) -> list[Customer]:
    today = today or date.today()
    customers = Customer.query.filter(
        Customer.tenant_id == tenant_id,
        Customer.status == "active",
        Customer.expiry_date.isnot(None),
        Customer.expiry_date < today,
    ).all()
    for customer in customers:
        customer.status = "expired"
    return customers


def generate_bills(
    tenant_id: int, billing_month: str, *, user: User | None = None, today: date | None = None
) -> tuple[BillGeneration, list[CustomerBill]]:
    month_bounds(billing_month)
    today = today or date.today()
    due_days = int(current_app.config.get("BILL_DUE_DAYS", BILL_DUE_DAYS_DEFAULT))

    already_billed = {
        customer_id
        for (customer_id,) in db.session.query(CustomerBill.customer_id).filter(
            CustomerBill.tenant_id == tenant_id,
            CustomerBill.billing_month == billing_month,
            CustomerBill.status != "cancelled",
        )
    }
    customers = (
        Customer.query.filter(
            Customer.tenant_id == tenant_id,
            Customer.status == "active",
            Customer.monthly_bill_cents > 0,
        )
        .order_by(Customer.id.asc())
        .all()
    )

    prefix = f"INV{billing_month.replace('-', '')}"
    sequence = (
        CustomerBill.query.filter(
            CustomerBill.tenant_id == tenant_id,
            CustomerBill.bill_number.like(f"{prefix}%"),
        ).count()
        + 1
    )

    bills: list[CustomerBill] = []
    for customer in customers:
        if customer.id in already_billed:
            continue
        bill = CustomerBill(
            tenant_id=tenant_id,
            customer=customer,
            bill_number=f"{prefix}{sequence:04d}",
            billing_month=billing_month,
            bill_date=today,
            due_date=today + timedelta(days=due_days),
            amount_cents=customer.monthly_bill_cents,
            total_cents=customer.monthly_bill_cents,
            status="unpaid",
        )
        sequence += 1
        customer.due_amount_cents = (customer.due_amount_cents or 0) + bill.total_cents
        db.session.add(bill)
        bills.append(bill)

    generation = BillGeneration(
        tenant_id=tenant_id,
        billing_month=billing_month,
        bills_count=len(bills),
        total_amount_cents=sum(bill.total_cents for bill in bills),
        generated_by=user.id if user else None,
    )
    db.session.add(generation)
    return generation, bills


def pay_customer_bill(
    bill: CustomerBill,
    *,
    amount_cents: int,
    payment_method: str = "cash",
    reference: str | None = None,
    collected_by: User | None = None,
    collected_by_type: str = "staff",
) -> CustomerPayment:
    if bill.status in {"paid", "cancelled"}:
        raise ValidationError(f"Bill {bill.bill_number} is already {bill.status}.")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero.")
    if amount_cents > bill.outstanding_cents:
        raise ValidationError("Payment exceeds the outstanding amount.")

    today = date.today()
    bill.paid_amount_cents += amount_cents
    bill.payment_method = payment_method
    bill.payment_reference = reference
    if bill.paid_amount_cents >= bill.total_cents:
        bill.status = "paid"
        bill.paid_date = today
    else:
        bill.status = "partial"

    customer = bill.customer
    payment = CustomerPayment(
        tenant_id=bill.tenant_id,
        customer=customer,
        bill_id=bill.id,
        amount_cents=amount_cents,
        payment_method=payment_method,
        transaction_id=reference,
        notes=f"Payment for bill {bill.bill_number}",
        collected_by=collected_by.id if collected_by else None,
        collected_by_name=(collected_by.full_name or collected_by.email) if collected_by else None,
        collected_by_type=collected_by_type,
    )
    db.session.add(payment)

    customer.due_amount_cents = max(0, (customer.due_amount_cents or 0) - amount_cents)
    customer.last_payment_date = today
    return payment


def mark_overdue_bills(tenant_id: int, today: date | None = None) -> int:
    today = today or date.today()
    bills = CustomerBill.query.filter(
        CustomerBill.tenant_id == tenant_id,
        CustomerBill.status.in_(["unpaid", "partial"]),
        CustomerBill.due_date.isnot(None),
        CustomerBill.due_date < today,
    ).all()
    for bill in bills:
        bill.status = "overdue"
    return len(bills)


RESELLER_CREDIT_TYPES = {"recharge", "commission", "refund", "transfer_in", "deposit"}


def adjust_reseller_balance(
    reseller: Reseller,
    transaction_type: str,
    amount_cents: int,
    *,
    description: str | None = None,
    customer_id: int | None = None,
    user_id: int | None = None,
) -> ResellerTransaction:
    if transaction_type not in RESELLER_TRANSACTION_TYPES:
        raise ValidationError("Unknown reseller transaction type.")
    if amount_cents <= 0:
        raise ValidationError("Amount must be greater than zero.")

    before = reseller.balance_cents or 0
    if transaction_type in RESELLER_CREDIT_TYPES:
        after = before + amount_cents
    else:
        after = before - amount_cents
        if after < 0:
            raise ValidationError("Insufficient reseller balance.")

    reseller.balance_cents = after
    transaction = ResellerTransaction(
        tenant_id=reseller.tenant_id,
        reseller=reseller,
        customer_id=customer_id,
        type=transaction_type,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=after,
        description=description,
        created_by=user_id,
    )
    db.session.add(transaction)
    return transaction


def calculate_reseller_commission(reseller: Reseller, price_cents: int, months: int) -> int:
    value = Decimal(str(reseller.commission_value or 0))
    if value <= 0:
        return 0
    if reseller.commission_type == "flat":
        return int(value * 100) * months
    return int((Decimal(price_cents) * value / Decimal(100)).quantize(Decimal("1")))


def reseller_recharge_customer(
    reseller: Reseller, customer: Customer, months: int = 1
) -> CustomerRecharge:
    if customer.reseller_id != reseller.id:
        raise ValidationError("Customer does not belong to this reseller.")
    if customer.package is None:
        raise ValidationError("Assign a package before recharging.")
    if months < 1:
        raise ValidationError("Recharge must cover at least one month.")

    price_cents = customer.package.price_cents * months
    adjust_reseller_balance(
        reseller,
        "customer_payment",
        price_cents,
        description=f"Recharge {customer.customer_code} for {months} month(s)",
        customer_id=customer.id,
    )
    commission_cents = calculate_reseller_commission(reseller, price_cents, months)
    if commission_cents > 0:
        adjust_reseller_balance(
            reseller,
            "commission",
            commission_cents,
            description=f"Commission on {customer.customer_code}",
            customer_id=customer.id,
        )

    return recharge_customer(
        customer,
        amount_cents=price_cents,
        months=months,
        payment_method="reseller_balance",
        collected_by_type="reseller",
        reseller=reseller,
    )


def get_sms_gateway_settings() -> SMSGatewaySettings | None:
    return SMSGatewaySettings.query.order_by(SMSGatewaySettings.id.asc()).first()


def _gateway_json(response: requests.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"message": (response.text or "").strip()[:500]}
    return data if isinstance(data, dict) else {"data": data}


def deliver_sms(
    settings: SMSGatewaySettings, phone: str, message: str, *, timeout: float = 15.0
) -> dict:
    """Hand one message to the configured provider and return its response payload."""
    provider = (settings.provider or "").strip().lower()
    sender_id = settings.sender_id or SMS_SENDER_ID_DEFAULT

    if provider == "smsnoc":
        response = requests.post(
            settings.api_url or "https://app.smsnoc.com/api/v3/sms/send",
            headers={
                "Authorization": f"Bearer {settings.api_key}",
                "Accept": "application/json",
            },
            json={
                "recipient": phone,
                "sender_id": sender_id,
                "type": "plain",
                "message": message,
            },
            timeout=timeout,
        )
        data = _gateway_json(response)
        if response.ok and data.get("status") == "success":
            return data
        raise SmsGatewayError(data.get("message") or "SMS NOC API error", data)

    if provider == "mimsms":
        response = requests.get(
            settings.api_url or "https://esms.mimsms.com/smsapi",
            params={
                "api_key": settings.api_key,
                "type": "text",
                "contacts": phone,
                "senderid": sender_id,
                "msg": message,
            },
            timeout=timeout,
        )
        text_body = response.text or ""
        if "SMS SUBMITTED" in text_body:
            return {"message": text_body}
        raise SmsGatewayError(text_body.strip() or "MIM SMS API error")

    if provider == "sslwireless":
        response = requests.post(
            settings.api_url or "https://sms.sslwireless.com/api/v3/send-sms",
            json={
                "api_token": settings.api_key,
                "sid": settings.sender_id,
                "msisdn": phone,
                "sms": message,
                "csms_id": str(int(time.time() * 1000)),
            },
            timeout=timeout,
        )
        data = _gateway_json(response)
        if data.get("status") == "SUCCESS":
            return data
        raise SmsGatewayError(data.get("status_message") or "SSL Wireless API error", data)

    raise SmsGatewayError(f"Unsupported provider: {settings.provider}")


def send_sms(
    tenant_id: int | None, phone: str | None, message: str | None, *, campaign_id: int | None = None
) -> dict[str, object]:
    normalized = normalize_phone_number(phone)
    body = (message or "").strip()
    if not normalized or not body:
        raise ValidationError("Phone and message are required.")

    log = SMSLog(
        tenant_id=tenant_id,
        campaign_id=campaign_id,
        phone_number=normalized,
        message=body,
    )
    db.session.add(log)

    settings = get_sms_gateway_settings()
    if settings is None or not settings.is_enabled:
        log.status = "failed"
        log.error_message = SMS_GATEWAY_DISABLED_MESSAGE
        return {"success": False, "error": SMS_GATEWAY_DISABLED_MESSAGE}

    try:
        response_data = deliver_sms(settings, normalized, body)
    except SmsGatewayError as exc:
        current_app.logger.warning("SMS delivery to %s failed: %s", normalized, exc)
        log.status = "failed"
        log.error_message = str(exc)[:500]
        log.provider_response = exc.response
        return {"success": False, "error": str(exc)}
    except requests.RequestException as exc:
        current_app.logger.warning("SMS gateway request for %s failed: %s", normalized, exc)
        log.status = "failed"
        log.error_message = str(exc)[:500]
        return {"success": False, "error": str(exc)}

    log.status = "sent"
    log.provider_response = response_data
    log.sent_at = utcnow()
    return {"success": True}


def ensure_default_sms_templates(tenant: Tenant) -> None:
    existing = {
        template.template_type
        for template in SMSTemplate.query.filter_by(tenant_id=tenant.id, is_system=True)
    }
    for definition in DEFAULT_SMS_TEMPLATES:
        if definition["template_type"] in existing:
            continue
        db.session.add(
            SMSTemplate(
                tenant_id=tenant.id,
                name=definition["name"],
                template_type=definition["template_type"],
                message=definition["message"],
                variables=list(definition["variables"]),
                is_active=True,
                is_system=True,
            )
        )


def customer_message_context(customer: Customer) -> dict[str, object]:
    next_bill = (
        CustomerBill.query.filter(
            CustomerBill.customer_id == customer.id,
            CustomerBill.status.in_(["unpaid", "partial", "overdue"]),
        )
        .order_by(CustomerBill.due_date.asc())
        .first()
    )
    due_date = next_bill.due_date if next_bill else customer.expiry_date
    amount_cents = customer.due_amount_cents or customer.monthly_bill_cents
    return {
        "customer_name": customer.name,
        "customer_code": customer.customer_code,
        "amount": format_cents(amount_cents),
        "due_date": due_date.isoformat() if due_date else "",
        "expiry_date": customer.expiry_date.isoformat() if customer.expiry_date else "",
        "package_name": customer.package.name if customer.package else "",
        "phone": format_phone_display(customer.phone),
    }


def resolve_campaign_recipients(
    tenant_id: int, target: str, area_id: int | None = None
) -> list[Customer]:
    if target not in SMS_CAMPAIGN_TARGETS:
        raise ValidationError("Unknown campaign target.")

    query = Customer.query.filter(Customer.tenant_id == tenant_id)
    if target == "active":
        query = query.filter(Customer.status == "active")
    elif target == "expired":
        query = query.filter(Customer.status == "expired")
    elif target == "due":
        query = query.filter(Customer.due_amount_cents > 0)
    elif target == "area":
        if not area_id:
            raise ValidationError("Select an area for area campaigns.")
        query = query.filter(Customer.area_id == area_id)

    seen: set[str] = set()
    recipients: list[Customer] = []
    for customer in query.order_by(Customer.id.asc()):
        phone = normalize_phone_number(customer.phone)
        if not is_valid_bd_phone(phone) or phone in seen:
            continue
        seen.add(phone)
        recipients.append(customer)
    return recipients


def run_sms_campaign(campaign: SMSCampaign) -> SMSCampaign:
    recipients = resolve_campaign_recipients(
        campaign.tenant_id, campaign.target, campaign.area_id
    )
    campaign.status = "sending"
    campaign.total_recipients = len(recipients)
    db.session.flush()

    sent = failed = 0
    for customer in recipients:
        message = render_template_text(campaign.message, customer_message_context(customer))
        result = send_sms(
            campaign.tenant_id, customer.phone, message, campaign_id=campaign.id
        )
        if result["success"]:
            sent += 1
        else:
            failed += 1

    campaign.sent_count = sent
    campaign.failed_count = failed
    campaign.status = "completed"
    campaign.completed_at = utcnow()
    return campaign


def _parse_quantity(raw: object | None) -> int:
    quantity = _coerce_int(raw)
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantities must be whole numbers greater than zero.")
    return quantity


def record_stock_movement(
    item: InventoryItem,
    *,
    transaction_type: str,
    change: int,
    unit_price_cents: int,
    reference_type: str,
    reference_id: int | None,
    notes: str | None = None,
    user_id: int | None = None,
) -> InventoryLedger:
    """Apply ``change`` to the item's stock (never below zero) and write a ledger row."""
    before = item.quantity or 0
    after = max(0, before + change)
    item.quantity = after
    entry = InventoryLedger(
        tenant_id=item.tenant_id,
        item_id=item.id,
        transaction_type=transaction_type,
        quantity=change,
        unit_price_cents=unit_price_cents,
        total_value_cents=abs(change) * unit_price_cents,
        stock_before=before,
        stock_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=user_id,
    )
    db.session.add(entry)
    return entry


def record_pos_sale(
    tenant_id: int,
    cart: list[dict],
    *,
    customer: POSCustomer | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    paid_cents: int = 0,
    payment_method: str = "cash",
    payment_reference: str | None = None,
    discount_cents: int = 0,
    tax_cents: int = 0,
    notes: str | None = None,
    user: User | None = None,
) -> POSSale:
    if not cart:
        raise ValidationError("Add at least one item to the cart.")
    if paid_cents < 0:
        raise ValidationError("Paid amount must not be negative.")

    lines: list[tuple[InventoryItem | None, str, int, int, int]] = []
    subtotal = 0
    for entry in cart:
        item = None
        item_id = _coerce_int(entry.get("item_id"))
        if item_id:
            item = InventoryItem.query.filter_by(id=item_id, tenant_id=tenant_id).first()
            if item is None:
                raise ValidationError(f"Inventory item {item_id} was not found.")
        quantity = _parse_quantity(entry.get("quantity"))
        if entry.get("unit_price") is not None:
            unit_price = parse_amount_cents(entry.get("unit_price"), field="unit_price")
        elif item is not None:
            unit_price = item.sale_price_cents
        else:
            raise ValidationError("Each cart line needs an item or a unit price.")
        line_discount = parse_amount_cents(entry.get("discount"), field="discount", required=False)
        name = (entry.get("name") or (item.name if item else "") or "Item").strip()
        line_total = quantity * unit_price - line_discount
        subtotal += line_total
        lines.append((item, name, quantity, unit_price, line_discount))

    total = subtotal - discount_cents + tax_cents
    if total < 0:
        raise ValidationError("Discount cannot exceed the sale total.")
    due = max(0, total - paid_cents)

    sale = POSSale(
        tenant_id=tenant_id,
        invoice_number=generate_pos_invoice_number(tenant_id),
        customer=customer,
        customer_name=(customer.name if customer else (customer_name or "").strip())
        or WALK_IN_CUSTOMER_NAME,
        customer_phone=(customer.phone if customer else normalize_phone_number(customer_phone))
        or None,
        subtotal_cents=subtotal,
        discount_cents=discount_cents,
        tax_cents=tax_cents,
        total_cents=total,
        paid_cents=paid_cents,
        due_cents=due,
        payment_method=payment_method,
        payment_reference=payment_reference,
        status="partial" if due > 0 else "completed",
        notes=notes,
        sold_by=user.id if user else None,
    )
    db.session.add(sale)
    db.session.flush()

    for item, name, quantity, unit_price, line_discount in lines:
        sale.items.append(
            POSSaleItem(
                item_id=item.id if item else None,
                item_name=name,
                quantity=quantity,
                unit_price_cents=unit_price,
                discount_cents=line_discount,
                total_cents=quantity * unit_price - line_discount,
            )
        )
        if item is not None:
            record_stock_movement(
                item,
                transaction_type="sale",
                change=-quantity,
                unit_price_cents=unit_price,
                reference_type="pos_sale",
                reference_id=sale.id,
                notes=f"Sale {sale.invoice_number}",
                user_id=user.id if user else None,
            )

    if customer is not None:
        customer.due_cents = (customer.due_cents or 0) + due
        customer.total_purchase_cents = (customer.total_purchase_cents or 0) + total

    return sale


def collect_pos_due(
    customer: POSCustomer,
    amount_cents: int,
    *,
    sale: POSSale | None = None,
    payment_method: str = "cash",
    reference: str | None = None,
    notes: str | None = None,
    user: User | None = None,
) -> POSPayment:
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero.")
    if sale is not None and sale.customer_id != customer.id:
        raise ValidationError("That sale belongs to a different customer.")

    payment = POSPayment(
        tenant_id=customer.tenant_id,
        customer_id=customer.id,
        sale_id=sale.id if sale else None,
        amount_cents=amount_cents,
        payment_method=payment_method,
        reference=reference,
        notes=notes,
        collected_by=user.id if user else None,
    )
    db.session.add(payment)

    customer.due_cents = max(0, (customer.due_cents or 0) - amount_cents)
    if sale is not None:
        sale.paid_cents += amount_cents
        sale.due_cents = max(0, sale.total_cents - sale.paid_cents)
        sale.status = "completed" if sale.due_cents <= 0 else "partial"
    return payment


def create_purchase_order(
    tenant_id: int,
    supplier: Supplier,
    lines: list[dict],
    *,
    paid_cents: int = 0,
    notes: str | None = None,
    order_date: date | None = None,
) -> PurchaseOrder:
    if not lines:
        raise ValidationError("Add at least one item to the purchase order.")

    order = PurchaseOrder(
        tenant_id=tenant_id,
        order_number=generate_purchase_order_number(tenant_id),
        supplier=supplier,
        order_date=order_date or date.today(),
        status="pending",
        notes=notes,
    )
    total = 0
    for entry in lines:
        item_id = _coerce_int(entry.get("item_id"))
        item = (
            InventoryItem.query.filter_by(id=item_id, tenant_id=tenant_id).first()
            if item_id
            else None
        )
        if item is None:
            raise ValidationError("Each purchase line needs a valid inventory item.")
        quantity = _parse_quantity(entry.get("quantity"))
        if entry.get("unit_price") is not None:
            unit_price = parse_amount_cents(entry.get("unit_price"), field="unit_price")
        else:
            unit_price = item.unit_price_cents
        order.items.append(
            PurchaseOrderItem(
                item=item,
                description=item.name,
                quantity=quantity,
                unit_price_cents=unit_price,
                total_cents=quantity * unit_price,
            )
        )
        total += quantity * unit_price

    if paid_cents > total:
        raise ValidationError("Paid amount cannot exceed the order total.")

    order.total_cents = total
    order.paid_amount_cents = paid_cents
    supplier.due_cents = (supplier.due_cents or 0) + (total - paid_cents)
    db.session.add(order)
    return order


def receive_purchase_order(order: PurchaseOrder, *, user: User | None = None) -> PurchaseOrder:
    if order.status != "pending":
        raise ValidationError(f"Purchase order {order.order_number} is already {order.status}.")

    for line in order.items:
        record_stock_movement(
            line.item,
            transaction_type="purchase",
            change=line.quantity,
            unit_price_cents=line.unit_price_cents,
            reference_type="purchase_order",
            reference_id=order.id,
            notes=f"Received {order.order_number}",
            user_id=user.id if user else None,
        )
        line.received_quantity = line.quantity

    order.status = "received"
    order.received_at = utcnow()
    return order


def record_supplier_payment(
    supplier: Supplier,
    amount_cents: int,
    *,
    order: PurchaseOrder | None = None,
    payment_method: str = "cash",
    reference: str | None = None,
    notes: str | None = None,
) -> SupplierPayment:
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero.")
    if order is not None:
        if order.supplier_id != supplier.id:
            raise ValidationError("That purchase order belongs to a different supplier.")
        if order.paid_amount_cents + amount_cents > order.total_cents:
            raise ValidationError("Payment exceeds the purchase order balance.")
        order.paid_amount_cents += amount_cents

    supplier.due_cents = max(0, (supplier.due_cents or 0) - amount_cents)
    payment = SupplierPayment(
        tenant_id=supplier.tenant_id,
        supplier_id=supplier.id,
        purchase_order_id=order.id if order else None,
        amount_cents=amount_cents,
        payment_method=payment_method,
        reference=reference,
        notes=notes,
    )
    db.session.add(payment)
    return payment


def pos_monthly_report(tenant_id: int, month: str | None) -> dict[str, object]:
    start, end = month_bounds(month)
    begin, finish = day_range(start, end)

    sales = (
        POSSale.query.filter(
            POSSale.tenant_id == tenant_id,
            POSSale.sale_date >= begin,
            POSSale.sale_date < finish,
            POSSale.status != "cancelled",
        )
        .order_by(POSSale.sale_date.asc())
        .all()
    )
    purchases = (
        PurchaseOrder.query.filter(
            PurchaseOrder.tenant_id == tenant_id,
            PurchaseOrder.order_date >= start,
            PurchaseOrder.order_date <= end,
            PurchaseOrder.status != "cancelled",
        )
        .order_by(PurchaseOrder.order_date.asc())
        .all()
    )
    collections = (
        POSPayment.query.filter(
            POSPayment.tenant_id == tenant_id,
            POSPayment.payment_date >= begin,
            POSPayment.payment_date < finish,
        )
        .order_by(POSPayment.payment_date.asc())
        .all()
    )
    supplier_payments = SupplierPayment.query.filter(
        SupplierPayment.tenant_id == tenant_id,
        SupplierPayment.payment_date >= begin,
        SupplierPayment.payment_date < finish,
    ).all()

    return {
        "month": f"{start:%Y-%m}",
        "start": start.isoformat(),
        "end": end.isoformat(),
        "sales": {
            "count": len(sales),
            "total_cents": sum(sale.total_cents for sale in sales),
            "paid_cents": sum(sale.paid_cents for sale in sales),
            "due_cents": sum(sale.due_cents for sale in sales),
        },
        "purchases": {
            "count": len(purchases),
            "total_cents": sum(order.total_cents for order in purchases),
            "paid_cents": sum(order.paid_amount_cents for order in purchases),
        },
        "collections": {
            "count": len(collections),
            "total_cents": sum(payment.amount_cents for payment in collections),
        },
        "supplier_payments": {
            "count": len(supplier_payments),
            "total_cents": sum(payment.amount_cents for payment in supplier_payments),
        },
        "rows": [
            {
                "date": _iso(as_utc(sale.sale_date).date()),
                "type": "sale",
                "reference": sale.invoice_number,
                "party": sale.customer_name,
                "total_cents": sale.total_cents,
                "paid_cents": sale.paid_cents,
                "due_cents": sale.due_cents,
            }
            for sale in sales
        ]
        + [
            {
                "date": _iso(order.order_date),
                "type": "purchase",
                "reference": order.order_number,
                "party": order.supplier.name if order.supplier else "",
                "total_cents": order.total_cents,
                "paid_cents": order.paid_amount_cents,
                "due_cents": max(0, order.total_cents - order.paid_amount_cents),
            }
            for order in purchases
        ]
        + [
            {
                "date": _iso(as_utc(payment.payment_date).date()),
                "type": "collection",
                "reference": payment.reference or "",
                "party": str(payment.customer_id),
                "total_cents": payment.amount_cents,
                "paid_cents": payment.amount_cents,
                "due_cents": 0,
            }
            for payment in collections
        ],
    }


def isp_monthly_report(tenant_id: int, month: str | None, today: date | None = None) -> dict[str, object]:
    start, end = month_bounds(month)
    billing_month = f"{start:%Y-%m}"
    begin, finish = day_range(start, end)
    today = today or date.today()
    today_begin, today_finish = day_range(today, today)

    customers = Customer.query.filter_by(tenant_id=tenant_id).all()
    bills = CustomerBill.query.filter(
        CustomerBill.tenant_id == tenant_id,
        CustomerBill.billing_month == billing_month,
        CustomerBill.status != "cancelled",
    ).all()
    payments = CustomerPayment.query.filter(
        CustomerPayment.tenant_id == tenant_id,
        CustomerPayment.payment_date >= begin,
        CustomerPayment.payment_date < finish,
    ).all()

    def _created_between(customer: Customer, lower: datetime, upper: datetime) -> bool:
        created = as_utc(customer.created_at)
        return created is not None and lower <= created < upper

    collectors: dict[str, dict[str, object]] = {}
    for payment in payments:
        name = payment.collected_by_name or ONLINE_COLLECTOR_LABEL
        bucket = collectors.setdefault(name, {"collector": name, "amount_cents": 0, "count": 0})
        bucket["amount_cents"] += payment.amount_cents
        bucket["count"] += 1

    billed_customer_ids = {bill.customer_id for bill in bills}
    non_generated = [
        {"id": customer.id, "customer_code": customer.customer_code, "name": customer.name}
        for customer in customers
        if customer.status == "active" and customer.id not in billed_customer_ids
    ]

    return {
        "month": billing_month,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_customers": len(customers),
        "active_customers": sum(1 for customer in customers if customer.status == "active"),
        "new_customers": sum(
            1 for customer in customers if _created_between(customer, begin, finish)
        ),
        "today_new_customers": sum(
            1 for customer in customers if _created_between(customer, today_begin, today_finish)
        ),
        "disabled_customers": sum(
            1 for customer in customers if customer.status in DISABLED_CUSTOMER_STATUSES
        ),
        "paid_bills": sum(1 for bill in bills if bill.status == "paid"),
        "unpaid_bills": sum(1 for bill in bills if bill.status != "paid"),
        "partial_bills": sum(1 for bill in bills if bill.status == "partial"),
        "monthly_collection_cents": sum(payment.amount_cents for payment in payments),
        "monthly_due_cents": sum(
            bill.total_cents - bill.paid_amount_cents for bill in bills if bill.status != "paid"
        ),
        "collectors": sorted(
            collectors.values(), key=lambda bucket: bucket["amount_cents"], reverse=True
        ),
        "non_generated_bill_customers": non_generated,
    }


def collection_series(tenant_id: int, days: int = 30, today: date | None = None) -> list[dict]:
    days = max(1, min(days, 366))
    today = today or date.today()
    first_day = today - timedelta(days=days - 1)
    begin, finish = day_range(first_day, today)

    totals: dict[date, int] = defaultdict(int)
    counts: dict[date, int] = defaultdict(int)
    for payment in CustomerPayment.query.filter(
        CustomerPayment.tenant_id == tenant_id,
        CustomerPayment.payment_date >= begin,
        CustomerPayment.payment_date < finish,
    ):
        day = as_utc(payment.payment_date).date()
        totals[day] += payment.amount_cents
        counts[day] += 1

    series = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        series.append(
            {"date": day.isoformat(), "amount_cents": totals[day], "count": counts[day]}
        )
    return series


def rows_to_csv(columns: list[str], rows: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({column: row.get(column, "") for column in columns})
    return buffer.getvalue()


def csv_response(content: str, filename: str) -> Response:
    return Response(
        content,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def import_customers_csv(tenant_id: int, raw_text: str) -> dict[str, object]:
    reader = csv.DictReader(io.StringIO(raw_text or ""))
    if reader.fieldnames is None:
        raise ValidationError("The CSV file is empty.")
    header = [name.strip().lower() for name in reader.fieldnames]
    if "name" not in header:
        raise ValidationError("The CSV header must include a name column.")

    packages = {
        package.name.strip().lower(): package
        for package in ISPPackage.query.filter_by(tenant_id=tenant_id)
    }
    areas = {area.name.strip().lower(): area for area in Area.query.filter_by(tenant_id=tenant_id)}
    existing_phones = {
        phone for (phone,) in db.session.query(Customer.phone).filter_by(tenant_id=tenant_id) if phone
    }
    existing_usernames = {
        username
        for (username,) in db.session.query(Customer.pppoe_username).filter_by(tenant_id=tenant_id)
        if username
    }

    created = 0
    skipped = 0
    errors: list[str] = []
    for line_number, raw_row in enumerate(reader, start=2):
        row = {
            (key or "").strip().lower(): (value or "").strip()
            for key, value in raw_row.items()
            if key is not None
        }
        name = row.get("name")
        if not name:
            skipped += 1
            errors.append(f"Row {line_number}: name is required.")
            continue

        phone = normalize_phone_number(row.get("phone")) or None
        username = row.get("pppoe_username") or None
        if (phone and phone in existing_phones) or (username and username in existing_usernames):
            skipped += 1
            errors.append(f"Row {line_number}: duplicate phone or PPPoE username.")
            continue

        package = packages.get((row.get("package") or "").lower())
        area = areas.get((row.get("area") or "").lower())
        try:
            monthly_bill = parse_amount_cents(
                row.get("monthly_bill"), field="monthly_bill", required=False
            )
        except ValidationError as exc:
            skipped += 1
            errors.append(f"Row {line_number}: {exc}")
            continue
        if not monthly_bill and package is not None:
            monthly_bill = package.price_cents

        customer = Customer(
            tenant_id=tenant_id,
            customer_code=generate_customer_code(tenant_id),
            name=name,
            phone=phone,
            email=row.get("email") or None,
            address=row.get("address") or None,
            pppoe_username=username,
            package=package,
            area=area,
            monthly_bill_cents=monthly_bill,
            connection_date=date.today(),
            status="active",
        )
        db.session.add(customer)
        db.session.flush()
        created += 1
        if phone:
            existing_phones.add(phone)
        if username:
            existing_usernames.add(username)

    return {"created": created, "skipped": skipped, "errors": errors}


def sync_onu_readings(olt: OLT, readings: list[dict]) -> dict[str, object]:
    """Upsert ONU readings pushed for ``olt`` and raise alerts on state changes."""
    now = utcnow()
    created = updated = skipped = 0
    raised: list[tuple[Alert, ONU]] = []

    existing = {(onu.pon_port, onu.onu_index): onu for onu in olt.onus}
    for reading in readings:
        if not isinstance(reading, dict):
            skipped += 1
            continue
        pon_port = str(reading.get("pon_port") or "").strip()
        onu_index = _coerce_int(reading.get("onu_index"))
        if not pon_port or onu_index is None:
            skipped += 1
            continue

        onu = existing.get((pon_port, onu_index))
        previous_status = onu.status if onu else None
        previous_rx = onu.rx_power if onu else None
        if onu is None:
            onu = ONU(tenant_id=olt.tenant_id, olt=olt, pon_port=pon_port, onu_index=onu_index)
            db.session.add(onu)
            existing[(pon_port, onu_index)] = onu
            created += 1
        else:
            updated += 1

        for field in ("name", "router_name", "mac_address", "serial_number", "pppoe_username"):
            value = reading.get(field)
            if value:
                setattr(onu, field, str(value).strip())

        rx_power = _coerce_float(reading.get("rx_power"))
        tx_power = _coerce_float(reading.get("tx_power"))
        onu.rx_power = rx_power
        onu.tx_power = tx_power

        status = str(reading.get("status") or "unknown").strip().lower()
        if status not in DEVICE_STATUS_OPTIONS:
            status = "unknown"
        onu.status = status

        label = onu.name or f"{olt.name} {pon_port}:{onu_index}"
        if status == "online" and previous_status != "online":
            onu.last_online = now
        if status == "offline" and previous_status != "offline":
            onu.last_offline = now
            if previous_status == "online":
                raised.append(
                    (
                        Alert(
                            tenant_id=olt.tenant_id,
                            type="onu_offline",
                            severity="warning",
                            title=f"ONU offline: {label}",
                            message=f"{label} on {olt.name} went offline.",
                            device_name=label,
                        ),
                        onu,
                    )
                )

        if rx_power is not None or tx_power is not None:
            onu.readings.append(PowerReading(rx_power=rx_power, tx_power=tx_power, recorded_at=now))

        if rx_power is not None and any(
            rx_power < threshold and (previous_rx is None or previous_rx >= threshold)
            for threshold in (POWER_DROP_WARNING_DBM, POWER_DROP_CRITICAL_DBM)
        ):
            severity = "critical" if rx_power < POWER_DROP_CRITICAL_DBM else "warning"
            raised.append(
                (
                    Alert(
                        tenant_id=olt.tenant_id,
                        type="power_drop",
                        severity=severity,
                        title=f"Low RX power: {label}",
                        message=f"{label} RX power dropped to {rx_power:.2f} dBm.",
                        device_name=label,
                    ),
                    onu,
                )
            )

    db.session.flush()
    alerts = []
    for alert, onu in raised:
        alert.device_id = onu.id
        db.session.add(alert)
        alerts.append(alert)

    olt.status = "online"
    olt.last_polled = now
    olt.active_ports = len({onu.pon_port for onu in olt.onus if onu.status == "online"})
    return {"created": created, "updated": updated, "skipped": skipped, "alerts": alerts}


def send_alert_email(app: Flask, recipient: str, subject: str, body: str) -> bool:
    if not recipient:
        return False

    sender = app.config.get("ALERT_EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom sender hook
            app.logger.warning("Custom alert email sender failed: %s", exc)
            return False

    host = (app.config.get("SMTP_HOST") or "").strip()
    from_email = (app.config.get("SMTP_FROM_EMAIL") or app.config.get("SMTP_USERNAME") or "").strip()
    if not host or not from_email:
        app.logger.info("SMTP is not configured; skipping alert email to %s", recipient)
        return False

    try:
        port = int(app.config.get("SMTP_PORT") or 587)
    except (TypeError, ValueError):
        port = 587

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr(("ISP Point Alerts", from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(datetime.now(UTC))
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    message.set_content(body)

    username = (app.config.get("SMTP_USERNAME") or "").strip()
    password = app.config.get("SMTP_PASSWORD") or ""
    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if is_truthy(app.config.get("SMTP_USE_TLS", True)):
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return True
    except (OSError, smtplib.SMTPException) as exc:  # pragma: no cover - external service dependency
        app.logger.warning("Alert email delivery failed: %s", exc)
        return False


def notify_critical_alerts(app: Flask, tenant: Tenant, alerts: list[Alert]) -> int:
    if not tenant.email or not has_module_access(tenant, "email_alerts"):
        return 0

    delivered = 0
    for alert in alerts:
        if alert.severity != "critical":
            continue
        body = (
            f"{alert.title}\n\n"
            f"{alert.message or ''}\n"
            f"Raised at {_iso(alert.created_at) or utcnow().isoformat()}."
        )
        if send_alert_email(app, tenant.email, f"[{tenant.name}] {alert.title}", body):
            delivered += 1
    return delivered


def resolve_polling_server_url(tenant: Tenant | None = None) -> str:
    if tenant is not None:
        configured = normalize_polling_server_url(tenant.polling_server_url)
        if configured:
            return configured
    return normalize_polling_server_url(current_app.config.get("POLLING_SERVER_URL"))


def build_polling_client(tenant: Tenant | None = None) -> PollingServerClient:
    timeout_value = current_app.config.get("POLLING_SERVER_TIMEOUT", POLLING_SERVER_TIMEOUT_DEFAULT)
    try:
        timeout = float(timeout_value)
    except (TypeError, ValueError):
        timeout = POLLING_SERVER_TIMEOUT_DEFAULT
    return PollingServerClient(resolve_polling_server_url(tenant), timeout=timeout)


def get_primary_router(tenant_id: int) -> MikroTikRouter | None:
    return (
        MikroTikRouter.query.filter_by(tenant_id=tenant_id)
        .order_by(MikroTikRouter.is_primary.desc(), MikroTikRouter.id.asc())
        .first()
    )


def get_bandwidth_window(app: Flask) -> BandwidthWindow:
    window = app.extensions.get("bandwidth_window")
    if window is None:
        window = BandwidthWindow(
            int(app.config.get("BANDWIDTH_WINDOW_SIZE", BANDWIDTH_WINDOW_SIZE_DEFAULT))
        )
        app.extensions["bandwidth_window"] = window
    return window


def _first_present(data: dict, keys: tuple[str, ...]) -> object | None:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def sample_bandwidth(tenant: Tenant, customer: Customer) -> dict[str, object]:
    """Ask the polling server for the customer's PPPoE rates and append one point."""
    if not customer.pppoe_username:
        raise ValidationError("Customer has no PPPoE username.")
    router = get_primary_router(tenant.id)
    if router is None:
        raise PollingServerError("No MikroTik router is configured.")

    payload = build_polling_client(tenant).pppoe_bandwidth(router, customer.pppoe_username)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    rx_bps = _first_present(data, ("rx_bps", "rx", "rx-bits-per-second", "download_bps"))
    tx_bps = _first_present(data, ("tx_bps", "tx", "tx-bits-per-second", "upload_bps"))

    point = {
        "time": utcnow().isoformat(),
        "rx_mbps": _bits_to_mbps(rx_bps),
        "tx_mbps": _bits_to_mbps(tx_bps),
    }
    app = current_app._get_current_object()
    points = get_bandwidth_window(app).append((tenant.id, customer.id), point)
    return {
        "customer_id": customer.id,
        "points": points,
        "window_size": get_bandwidth_window(app).size,
        "poll_interval_seconds": int(
            app.config.get("BANDWIDTH_POLL_SECONDS", BANDWIDTH_POLL_SECONDS_DEFAULT)
        ),
    }


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "isp_point.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    smtp_port_env = os.environ.get("SMTP_PORT")
    try:
        smtp_port = int(smtp_port_env) if smtp_port_env else 587
    except ValueError:
        smtp_port = 587

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or f"sqlite:///{db_path}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SUPER_ADMIN_EMAIL": os.environ.get("SUPER_ADMIN_EMAIL"),
        "SUPER_ADMIN_PASSWORD": os.environ.get("SUPER_ADMIN_PASSWORD"),
        "POLLING_SERVER_URL": os.environ.get("POLLING_SERVER_URL", ""),
        "POLLING_SERVER_TIMEOUT": float(
            os.environ.get("POLLING_SERVER_TIMEOUT", POLLING_SERVER_TIMEOUT_DEFAULT)
        ),
        "BANDWIDTH_WINDOW_SIZE": int(
            os.environ.get("BANDWIDTH_WINDOW_SIZE", BANDWIDTH_WINDOW_SIZE_DEFAULT)
        ),
        "BANDWIDTH_POLL_SECONDS": int(
            os.environ.get("BANDWIDTH_POLL_SECONDS", BANDWIDTH_POLL_SECONDS_DEFAULT)
        ),
        "DEFAULT_PAGE_SIZE": int(os.environ.get("DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
        "MAX_PAGE_SIZE": int(os.environ.get("MAX_PAGE_SIZE", MAX_PAGE_SIZE)),
        "BILL_DUE_DAYS": int(os.environ.get("BILL_DUE_DAYS", BILL_DUE_DAYS_DEFAULT)),
        "TRIAL_DAYS": int(os.environ.get("TRIAL_DAYS", TRIAL_DAYS_DEFAULT)),
        "PLATFORM_CURRENCY": os.environ.get("PLATFORM_CURRENCY", PLATFORM_CURRENCY_DEFAULT),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_PUBLISHABLE_KEY": os.environ.get("STRIPE_PUBLISHABLE_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": smtp_port,
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_FROM_EMAIL": os.environ.get("SMTP_FROM_EMAIL"),
        "SMTP_USE_TLS": is_truthy(os.environ.get("SMTP_USE_TLS", "true")),
        "DASHBOARD_STATS_CACHE_SECONDS": float(
            os.environ.get(
                "DASHBOARD_STATS_CACHE_SECONDS", DASHBOARD_STATS_CACHE_SECONDS_DEFAULT
            )
        ),
        "ALERT_EMAIL_SENDER": None,
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    init_stripe(app)
    app.extensions["bandwidth_window"] = BandwidthWindow(app.config["BANDWIDTH_WINDOW_SIZE"])

    register_routes(app)

    with app.app_context():
        db.create_all()
        ensure_super_admin_user()
        ensure_platform_packages_seeded()
        ensure_sms_gateway_settings()

    return app


def init_db() -> None:
    """Initialize the database tables if they do not exist."""

    app = create_app()
    with app.app_context():
        db.create_all()
        ensure_super_admin_user()
        ensure_platform_packages_seeded()
        ensure_sms_gateway_settings()


def ensure_super_admin_user() -> None:
    if User.query.filter_by(role="super_admin").count() > 0:
        return

    email = (current_app.config.get("SUPER_ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("SUPER_ADMIN_PASSWORD")

    if not email or not password:
        current_app.logger.warning(
            "No super admin exists and SUPER_ADMIN_EMAIL/SUPER_ADMIN_PASSWORD were not provided."
        )
        return

    admin = User(email=email, full_name="Super Admin", role="super_admin")
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def ensure_platform_packages_seeded() -> None:
    if PlatformPackage.query.count() > 0:
        return

    for definition in DEFAULT_PLATFORM_PACKAGES:
        db.session.add(PlatformPackage(**definition))
    db.session.commit()


def ensure_sms_gateway_settings() -> None:
    if get_sms_gateway_settings() is not None:
        return

    db.session.add(
        SMSGatewaySettings(provider="smsnoc", is_enabled=False, sender_id=SMS_SENDER_ID_DEFAULT)
    )
    db.session.commit()


def _current_user() -> User | None:
    user_id = session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        session.pop(SESSION_USER_KEY, None)
        return None
    return user


def _resolve_request_tenant(user: User) -> Tenant | None:
    if not user.is_super_admin:
        return user.tenant
    tenant_id = _coerce_int(request.headers.get(TENANT_HEADER))
    if not tenant_id:
        return None
    return db.session.get(Tenant, tenant_id)


def login_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        user = _current_user()
        if user is None:
            return jsonify({"error": "Login required.", "reason": "unauthenticated"}), 401
        g.user = user
        return func(*args, **kwargs)

    return wrapper


def super_admin_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        user = _current_user()
        if user is None:
            return jsonify({"error": "Login required.", "reason": "unauthenticated"}), 401
        if not user.is_super_admin:
            current_app.logger.warning(
                "User %s attempted to reach super admin route %s", user.id, request.path
            )
            return jsonify({"error": "Super admin access required.", "reason": "forbidden"}), 403
        g.user = user
        return func(*args, **kwargs)

    return wrapper


def tenant_access_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        user = _current_user()
        if user is None:
            return jsonify({"error": "Login required.", "reason": "unauthenticated"}), 401
        g.user = user

        tenant = _resolve_request_tenant(user)
        if user.is_super_admin and tenant is None:
            return (
                jsonify({"error": f"Select a tenant with the {TENANT_HEADER} header."}),
                400,
            )

        allowed, reason, message = evaluate_tenant_access(user, tenant)
        if not allowed:
            current_app.logger.warning(
                "Blocked tenant access for user %s on %s: %s", user.id, request.path, reason
            )
            return jsonify({"error": message, "reason": reason}), 403

        g.tenant = tenant
        return func(*args, **kwargs)

    return wrapper


def role_required(*roles: str):
    def decorator(func):
        from functools import wraps

        @wraps(func)
        def wrapper(*args, **kwargs):
            user = g.get("user")
            if user is None:
                return jsonify({"error": "Login required.", "reason": "unauthenticated"}), 401
            if not (user.is_super_admin or user.is_owner or user.role in roles):
                return (
                    jsonify(
                        {
                            "error": "You do not have permission to perform this action.",
                            "reason": "forbidden",
                        }
                    ),
                    403,
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator


def module_required(module: str):
    def decorator(func):
        from functools import wraps

        @wraps(func)
        def wrapper(*args, **kwargs):
            user = g.get("user")
            tenant = g.get("tenant")
            if user is not None and user.is_super_admin:
                return func(*args, **kwargs)
            if tenant is None or not has_module_access(tenant, module):
                return (
                    jsonify(
                        {
                            "error": f"The {module} module is not enabled for this account.",
                            "reason": "module_disabled",
                            "module": module,
                        }
                    ),
                    403,
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator


def customer_login_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        customer_id = session.get(PORTAL_SESSION_KEY)
        if not customer_id:
            return jsonify({"error": "Customer login required."}), 401

        customer = db.session.get(Customer, customer_id)
        if not customer:
            session.pop(PORTAL_SESSION_KEY, None)
            return jsonify({"error": "Customer session expired."}), 401

        tenant = db.session.get(Tenant, customer.tenant_id)
        if tenant is None or tenant.status in {"suspended", "cancelled"}:
            session.pop(PORTAL_SESSION_KEY, None)
            return (
                jsonify(
                    {
                        "error": "This service provider account is unavailable.",
                        "reason": "suspended",
                    }
                ),
                403,
            )

        g.portal_customer = customer
        g.tenant = tenant
        return func(customer, *args, **kwargs)

    return wrapper


def reseller_login_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        reseller_id = session.get(RESELLER_SESSION_KEY)
        if not reseller_id:
            return jsonify({"error": "Reseller login required."}), 401

        reseller = db.session.get(Reseller, reseller_id)
        if not reseller or not reseller.is_active:
            session.pop(RESELLER_SESSION_KEY, None)
            return jsonify({"error": "Reseller session expired."}), 401

        g.reseller = reseller
        g.tenant = db.session.get(Tenant, reseller.tenant_id)
        return func(reseller, *args, **kwargs)

    return wrapper


def invalidate_dashboard_stats_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_STATS_CACHE_KEY, None)


def build_dashboard_stats(tenant_id: int, today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    month_start, month_end = month_bounds(f"{today:%Y-%m}")
    month_begin, month_finish = day_range(month_start, month_end)
    today_begin, today_finish = day_range(today, today)

    status_counts = {status: 0 for status in CUSTOMER_STATUS_OPTIONS}
    for status, count in (
        db.session.query(Customer.status, db.func.count(Customer.id))
        .filter(Customer.tenant_id == tenant_id)
        .group_by(Customer.status)
    ):
        status_counts[status] = count

    def _collected(*filters) -> int:
        total = (
            db.session.query(db.func.coalesce(db.func.sum(CustomerPayment.amount_cents), 0))
            .filter(CustomerPayment.tenant_id == tenant_id, *filters)
            .scalar()
        )
        return int(total or 0)

    total_due = (
        db.session.query(db.func.coalesce(db.func.sum(Customer.due_amount_cents), 0))
        .filter(Customer.tenant_id == tenant_id)
        .scalar()
    )

    onu_counts = {status: 0 for status in DEVICE_STATUS_OPTIONS}
    for status, count in (
        db.session.query(ONU.status, db.func.count(ONU.id))
        .filter(ONU.tenant_id == tenant_id)
        .group_by(ONU.status)
    ):
        onu_counts[status] = count

    olts = OLT.query.filter_by(tenant_id=tenant_id).all()

    return {
        "customers": {
            "total": sum(status_counts.values()),
            **status_counts,
        },
        "collections": {
            "all_time_cents": _collected(),
            "this_month_cents": _collected(
                CustomerPayment.payment_date >= month_begin,
                CustomerPayment.payment_date < month_finish,
            ),
            "today_cents": _collected(
                CustomerPayment.payment_date >= today_begin,
                CustomerPayment.payment_date < today_finish,
            ),
        },
        "total_due_cents": int(total_due or 0),
        "devices": {
            "olts_total": len(olts),
            "olts_online": sum(1 for olt in olts if olt.status == "online"),
            "olts_offline": sum(1 for olt in olts if olt.status == "offline"),
            "onus_total": sum(onu_counts.values()),
            "onus_online": onu_counts["online"],
            "onus_offline": onu_counts["offline"],
        },
    }


def get_dashboard_stats(app: Flask, tenant: Tenant) -> dict[str, object]:
    ttl_seconds = float(
        app.config.get("DASHBOARD_STATS_CACHE_SECONDS", DASHBOARD_STATS_CACHE_SECONDS_DEFAULT)
    )
    now = time.monotonic()
    cache = app.config.get(DASHBOARD_STATS_CACHE_KEY) or {}
    entry = cache.get(tenant.id)
    if entry and entry.get("expires_at", 0) > now:
        return entry["payload"]

    payload = build_dashboard_stats(tenant.id)
    if ttl_seconds > 0:
        cache[tenant.id] = {"payload": payload, "expires_at": now + ttl_seconds}
        app.config[DASHBOARD_STATS_CACHE_KEY] = cache
    return payload


def _dashboard_stats_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_stats_cache()


for model in (Customer, CustomerPayment, ONU):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_stats_cache_invalidator)


def register_routes(app: Flask) -> None:
    def _payload() -> dict:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    def _text(data: dict, key: str) -> str | None:
        value = data.get(key)
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    def _choice(value: object | None, options: list[str], default: str, field: str) -> str:
        cleaned = str(value).strip() if value is not None else ""
        if not cleaned:
            return default
        if cleaned not in options:
            raise ValidationError(f"Invalid {field}: {cleaned}.")
        return cleaned

    def _tenant_record(model, record_id: int):
        record = db.session.get(model, record_id)
        if record is None or record.tenant_id != g.tenant.id:
            abort(404)
        return record

    def _commit(description: str) -> None:
        try:
            db.session.commit()
        except IntegrityError:
            raise
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to %s", description)
            raise

    def _page_payload(result: dict, serializer=None) -> dict:
        items = result["items"]
        if serializer is not None:
            items = [serializer(item) for item in items]
        return {**result, "items": items}

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        db.session.rollback()
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(PollingServerError)
    def handle_polling_server_error(error):
        db.session.rollback()
        current_app.logger.warning("Polling server request failed: %s", error)
        return jsonify({"error": str(error)}), 502

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        db.session.rollback()
        current_app.logger.warning("Integrity error on %s: %s", request.path, error.orig)
        return jsonify({"error": "That record conflicts with an existing one."}), 400

    @app.errorhandler(StripeError)
    def handle_stripe_error(error):
        db.session.rollback()
        current_app.logger.warning("Stripe request failed: %s", error)
        return jsonify({"error": describe_stripe_error(error)}), 400

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return jsonify({"error": error.description}), error.code

    # Authentication and tenant signup

    @app.post("/auth/login")
    def login():
        data = _payload()
        email = (_text(data, "email") or "").lower()
        password = data.get("password") or ""

        user = User.query.filter(db.func.lower(User.email) == email).first() if email else None
        if user is None or not user.is_active or not user.check_password(password):
            current_app.logger.warning("Failed login attempt for %s", email or "<blank>")
            return jsonify({"error": "Invalid email or password."}), 401

        session.clear()
        session[SESSION_USER_KEY] = user.id
        user.last_login_at = utcnow()
        log_activity("login", entity_type="user", entity_id=user.id, tenant_id=user.tenant_id, user_id=user.id)
        _commit("record login")

        allowed, reason, message = evaluate_tenant_access(user, user.tenant)
        return jsonify(
            {
                "user": user.to_dict(),
                "tenant": user.tenant.to_dict() if user.tenant else None,
                "access": {"allowed": allowed, "reason": reason, "message": message},
            }
        )

    @app.get("/auth/logout")
    def logout():
        session.pop(SESSION_USER_KEY, None)
        return jsonify({"status": "ok"})

    @app.post("/auth/register")
    def register_tenant():
        data = _payload()
        company_name = _text(data, "company_name")
        email = (_text(data, "email") or "").lower()
        password = data.get("password") or ""
        full_name = _text(data, "full_name")
        phone = normalize_phone_number(data.get("phone")) or None

        if not company_name or not email or not password:
            raise ValidationError("Company name, email and password are required.")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters.")
        if (
            Tenant.query.filter(db.func.lower(Tenant.email) == email).first()
            or User.query.filter(db.func.lower(User.email) == email).first()
        ):
            raise ValidationError("An account with that email already exists.")

        requested_subdomain = slugify_segment(data.get("subdomain") or "")
        if requested_subdomain:
            if Tenant.query.filter_by(subdomain=requested_subdomain).first():
                raise ValidationError("That subdomain is already taken.")
            subdomain = requested_subdomain
        else:
            base = slugify_segment(company_name) or "isp"
            subdomain = base
            suffix = 2
            while Tenant.query.filter_by(subdomain=subdomain).first():
                subdomain = f"{base}-{suffix}"
                suffix += 1

        trial_days = int(current_app.config.get("TRIAL_DAYS", TRIAL_DAYS_DEFAULT))
        starter = PlatformPackage.query.order_by(PlatformPackage.sort_order.asc()).first()
        tenant = Tenant(
            name=company_name,
            email=email,
            phone=phone,
            address=_text(data, "address"),
            subdomain=subdomain,
            status="trial",
            trial_ends_at=utcnow() + timedelta(days=trial_days),
            features=dict(starter.features or {}) if starter else {ALWAYS_ENABLED_MODULE: True},
            max_olts=starter.max_olts if starter else 1,
            max_users=starter.max_users if starter else 1,
        )
        db.session.add(tenant)
        db.session.flush()

        owner = User(
            tenant=tenant,
            email=email,
            full_name=full_name or company_name,
            phone=phone,
            role="admin",
            is_owner=True,
        )
        owner.set_password(password)
        db.session.add(owner)
        db.session.flush()

        ensure_default_sms_templates(tenant)
        log_activity(
            "tenant_registered",
            entity_type="tenant",
            entity_id=tenant.id,
            tenant_id=tenant.id,
            user_id=owner.id,
        )
        _commit("register tenant")
        current_app.logger.info("Registered tenant %s (%s)", tenant.name, tenant.id)

        session.clear()
        session[SESSION_USER_KEY] = owner.id
        return jsonify({"tenant": tenant.to_dict(), "user": owner.to_dict()}), 201

    @app.get("/auth/me")
    @login_required
    def current_user_profile():
        user = g.user
        tenant = user.tenant
        allowed, reason, message = evaluate_tenant_access(user, tenant)
        payload = {
            "user": user.to_dict(),
            "tenant": tenant.to_dict() if tenant else None,
            "access": {"allowed": allowed, "reason": reason, "message": message},
        }
        if tenant is not None:
            limits = resolve_tenant_limits(tenant)
            payload["limits"] = limits
            payload["modules"] = {
                module: has_module_access(tenant, module) for module in TENANT_MODULES
            }
        return jsonify(payload)

    # Super admin: tenants

    def _apply_tenant_fields(tenant: Tenant, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Tenant name is required.")
            tenant.name = name
        if "email" in data:
            email = (_text(data, "email") or "").lower()
            if not email:
                raise ValidationError("Tenant email is required.")
            clash = Tenant.query.filter(
                db.func.lower(Tenant.email) == email, Tenant.id != (tenant.id or 0)
            ).first()
            if clash:
                raise ValidationError("Another tenant already uses that email.")
            tenant.email = email
        if "subdomain" in data:
            subdomain = slugify_segment(data.get("subdomain") or "") or None
            if subdomain:
                clash = Tenant.query.filter(
                    Tenant.subdomain == subdomain, Tenant.id != (tenant.id or 0)
                ).first()
                if clash:
                    raise ValidationError("That subdomain is already taken.")
            tenant.subdomain = subdomain
        if "phone" in data:
            tenant.phone = normalize_phone_number(data.get("phone")) or None
        if "address" in data:
            tenant.address = _text(data, "address")
        if "status" in data:
            tenant.status = _choice(data.get("status"), TENANT_STATUS_OPTIONS, tenant.status or "trial", "status")
        if "max_olts" in data:
            tenant.max_olts = max(1, _coerce_int(data.get("max_olts")) or 1)
        if "max_users" in data:
            tenant.max_users = max(1, _coerce_int(data.get("max_users")) or 1)
        if "features" in data:
            features = data.get("features") or {}
            if not isinstance(features, dict):
                raise ValidationError("Features must be an object of module flags.")
            tenant.features = {
                module: is_truthy(features.get(module))
                for module in TENANT_MODULES
                if module in features
            }
        if "polling_server_url" in data:
            tenant.polling_server_url = normalize_polling_server_url(data.get("polling_server_url")) or None
        if "trial_ends_at" in data:
            trial_end = parse_date(data.get("trial_ends_at"))
            tenant.trial_ends_at = (
                datetime.combine(trial_end, datetime.min.time(), tzinfo=UTC) if trial_end else None
            )

    def _serialize_tenant(tenant: Tenant) -> dict:
        payload = tenant.to_dict()
        subscription = get_active_subscription(tenant)
        payload["subscription"] = subscription.to_dict() if subscription else None
        payload["user_count"] = len(tenant.users)
        return payload

    @app.get("/admin/tenants")
    @super_admin_required
    def admin_list_tenants():
        page, page_size = page_args()
        tenants = Tenant.query.order_by(Tenant.created_at.desc()).all()
        records = filter_records(
            [_serialize_tenant(tenant) for tenant in tenants],
            request.args.get("search"),
            ("name", "email", "subdomain", "phone"),
            {"status": request.args.get("status")},
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/admin/tenants")
    @super_admin_required
    def admin_create_tenant():
        data = _payload()
        if not _text(data, "name") or not _text(data, "email"):
            raise ValidationError("Tenant name and email are required.")

        tenant = Tenant(status="trial", features={ALWAYS_ENABLED_MODULE: True})
        _apply_tenant_fields(tenant, data)
        if tenant.status == "trial" and tenant.trial_ends_at is None:
            trial_days = int(current_app.config.get("TRIAL_DAYS", TRIAL_DAYS_DEFAULT))
            tenant.trial_ends_at = utcnow() + timedelta(days=trial_days)
        db.session.add(tenant)
        db.session.flush()

        owner_password = data.get("owner_password")
        if owner_password:
            owner = User(
                tenant=tenant,
                email=(_text(data, "owner_email") or tenant.email).lower(),
                full_name=_text(data, "owner_name") or tenant.name,
                role="admin",
                is_owner=True,
            )
            owner.set_password(owner_password)
            db.session.add(owner)

        ensure_default_sms_templates(tenant)
        log_activity("tenant_created", entity_type="tenant", entity_id=tenant.id, tenant_id=tenant.id)
        _commit("create tenant")
        return jsonify(_serialize_tenant(tenant)), 201

    @app.get("/admin/tenants/<int:tenant_id>")
    @super_admin_required
    def admin_tenant_detail(tenant_id: int):
        tenant = db.session.get(Tenant, tenant_id) or abort(404)
        payload = _serialize_tenant(tenant)
        payload["subscriptions"] = [
            subscription.to_dict()
            for subscription in sorted(
                tenant.subscriptions, key=lambda item: item.id, reverse=True
            )
        ]
        payload["users"] = [user.to_dict() for user in tenant.users]
        payload["limits"] = resolve_tenant_limits(tenant)
        return jsonify(payload)

    @app.post("/admin/tenants/<int:tenant_id>")
    @super_admin_required
    def admin_update_tenant(tenant_id: int):
        tenant = db.session.get(Tenant, tenant_id) or abort(404)
        _apply_tenant_fields(tenant, _payload())
        log_activity("tenant_updated", entity_type="tenant", entity_id=tenant.id, tenant_id=tenant.id)
        _commit("update tenant")
        return jsonify(_serialize_tenant(tenant))

    @app.post("/admin/tenants/<int:tenant_id>/suspend")
    @super_admin_required
    def admin_suspend_tenant(tenant_id: int):
        tenant = db.session.get(Tenant, tenant_id) or abort(404)
        reason = _text(_payload(), "reason") or "Suspended by administrator"
        tenant.status = "suspended"
        tenant.suspended_at = utcnow()
        tenant.suspended_reason = reason
        log_activity(
            "tenant_suspended",
            entity_type="tenant",
            entity_id=tenant.id,
            tenant_id=tenant.id,
            details={"reason": reason},
        )
        _commit("suspend tenant")
        return jsonify(_serialize_tenant(tenant))

    @app.post("/admin/tenants/<int:tenant_id>/activate")
    @super_admin_required
    def admin_activate_tenant(tenant_id: int):
        tenant = db.session.get(Tenant, tenant_id) or abort(404)
        tenant.status = "active"
        tenant.suspended_at = None
        tenant.suspended_reason = None
        log_activity("tenant_activated", entity_type="tenant", entity_id=tenant.id, tenant_id=tenant.id)
        _commit("activate tenant")
        return jsonify(_serialize_tenant(tenant))

    @app.post("/admin/tenants/<int:tenant_id>/delete")
    @super_admin_required
    def admin_delete_tenant(tenant_id: int):
        tenant = db.session.get(Tenant, tenant_id) or abort(404)
        Reseller.query.filter_by(tenant_id=tenant.id).update({"parent_id": None})
        for model in TENANT_SCOPED_MODELS:
            for record in model.query.filter_by(tenant_id=tenant.id).all():
                db.session.delete(record)
            db.session.flush()
        name = tenant.name
        db.session.delete(tenant)
        log_activity(
            "tenant_deleted",
            entity_type="tenant",
            entity_id=tenant_id,
            tenant_id=None,
            details={"name": name},
        )
        _commit("delete tenant")
        current_app.logger.info("Deleted tenant %s (%s)", name, tenant_id)
        return jsonify({"status": "deleted", "id": tenant_id})

    # Super admin: platform packages

    def _apply_platform_package_fields(package: PlatformPackage, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Package name is required.")
            package.name = name
        if "description" in data:
            package.description = _text(data, "description")
        if "price_monthly" in data:
            package.price_monthly_cents = parse_amount_cents(data.get("price_monthly"), field="price_monthly")
        if "price_yearly" in data:
            package.price_yearly_cents = parse_amount_cents(data.get("price_yearly"), field="price_yearly")
        if "max_olts" in data:
            package.max_olts = max(1, _coerce_int(data.get("max_olts")) or 1)
        if "max_users" in data:
            package.max_users = max(1, _coerce_int(data.get("max_users")) or 1)
        if "max_onus" in data:
            package.max_onus = _coerce_int(data.get("max_onus"))
        if "features" in data:
            features = data.get("features") or {}
            if not isinstance(features, dict):
                raise ValidationError("Features must be an object of module flags.")
            package.features = {
                module: is_truthy(features.get(module))
                for module in TENANT_MODULES
                if module in features
            }
        if "is_active" in data:
            package.is_active = is_truthy(data.get("is_active"))
        if "sort_order" in data:
            package.sort_order = _coerce_int(data.get("sort_order")) or 0

    @app.get("/admin/packages")
    @super_admin_required
    def admin_list_packages():
        packages = PlatformPackage.query.order_by(
            PlatformPackage.sort_order.asc(), PlatformPackage.id.asc()
        ).all()
        return jsonify({"items": [package.to_dict() for package in packages]})

    @app.post("/admin/packages")
    @super_admin_required
    def admin_create_package():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Package name is required.")
        package = PlatformPackage()
        _apply_platform_package_fields(package, data)
        db.session.add(package)
        _commit("create platform package")
        return jsonify(package.to_dict()), 201

    @app.post("/admin/packages/<int:package_id>")
    @super_admin_required
    def admin_update_package(package_id: int):
        package = db.session.get(PlatformPackage, package_id) or abort(404)
        _apply_platform_package_fields(package, _payload())
        _commit("update platform package")
        return jsonify(package.to_dict())

    @app.post("/admin/packages/<int:package_id>/delete")
    @super_admin_required
    def admin_delete_package(package_id: int):
        package = db.session.get(PlatformPackage, package_id) or abort(404)
        if Subscription.query.filter_by(package_id=package.id).first():
            raise ValidationError("That package has subscriptions. Deactivate it instead.")
        db.session.delete(package)
        _commit("delete platform package")
        return jsonify({"status": "deleted", "id": package_id})

    # Super admin: subscriptions and payments

    @app.get("/admin/subscriptions")
    @super_admin_required
    def admin_list_subscriptions():
        page, page_size = page_args()
        query = Subscription.query.order_by(Subscription.created_at.desc())
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(Subscription.status == status)
        tenant_id = _coerce_int(request.args.get("tenant_id"))
        if tenant_id:
            query = query.filter(Subscription.tenant_id == tenant_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/admin/subscriptions")
    @super_admin_required
    def admin_create_subscription():
        data = _payload()
        tenant = db.session.get(Tenant, _coerce_int(data.get("tenant_id")) or 0)
        package = db.session.get(PlatformPackage, _coerce_int(data.get("package_id")) or 0)
        if tenant is None or package is None:
            raise ValidationError("Select a tenant and a package.")
        billing_cycle = _choice(data.get("billing_cycle"), list(BILLING_CYCLE_DAYS), "monthly", "billing cycle")

        subscription, invoice = start_subscription(tenant, package, billing_cycle)
        db.session.flush()
        log_activity(
            "subscription_created",
            entity_type="subscription",
            entity_id=subscription.id,
            tenant_id=tenant.id,
            details={"package": package.name, "billing_cycle": billing_cycle},
        )
        _commit("create subscription")
        return jsonify({"subscription": subscription.to_dict(), "invoice": invoice.to_dict()}), 201

    @app.post("/admin/subscriptions/<int:subscription_id>/cancel")
    @super_admin_required
    def admin_cancel_subscription(subscription_id: int):
        subscription = db.session.get(Subscription, subscription_id) or abort(404)
        if subscription.status == "cancelled":
            raise ValidationError("Subscription is already cancelled.")
        subscription.status = "cancelled"
        subscription.cancelled_at = utcnow()
        subscription.cancel_reason = _text(_payload(), "reason") or "Cancelled by administrator"
        log_activity(
            "subscription_cancelled",
            entity_type="subscription",
            entity_id=subscription.id,
            tenant_id=subscription.tenant_id,
        )
        _commit("cancel subscription")
        return jsonify(subscription.to_dict())

    @app.post("/admin/subscriptions/expire")
    @super_admin_required
    def admin_expire_subscriptions():
        expired = expire_due_subscriptions()
        _commit("expire subscriptions")
        return jsonify({"expired": expired})

    @app.get("/admin/payments")
    @super_admin_required
    def admin_list_payments():
        page, page_size = page_args()
        query = PlatformPayment.query.order_by(PlatformPayment.created_at.desc())
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(PlatformPayment.status == status)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/admin/payments/<int:payment_id>/verify")
    @super_admin_required
    def admin_verify_payment(payment_id: int):
        payment = db.session.get(PlatformPayment, payment_id) or abort(404)
        if payment.status != "pending":
            raise ValidationError(f"Payment is already {payment.status}.")
        complete_platform_payment(payment, verified_by=g.user.id)
        log_activity(
            "payment_verified",
            entity_type="platform_payment",
            entity_id=payment.id,
            tenant_id=payment.tenant_id,
        )
        _commit("verify platform payment")
        return jsonify(payment.to_dict())

    @app.post("/admin/payments/<int:payment_id>/reject")
    @super_admin_required
    def admin_reject_payment(payment_id: int):
        payment = db.session.get(PlatformPayment, payment_id) or abort(404)
        if payment.status != "pending":
            raise ValidationError(f"Payment is already {payment.status}.")
        payment.status = "failed"
        payment.notes = _text(_payload(), "reason") or "Rejected by administrator"
        payment.verified_by = g.user.id
        log_activity(
            "payment_rejected",
            entity_type="platform_payment",
            entity_id=payment.id,
            tenant_id=payment.tenant_id,
        )
        _commit("reject platform payment")
        return jsonify(payment.to_dict())

    @app.get("/admin/dashboard")
    @super_admin_required
    def admin_dashboard():
        now = utcnow()
        month_start, month_end = month_bounds(None)
        month_begin, month_finish = day_range(month_start, month_end)

        tenant_counts = {status: 0 for status in TENANT_STATUS_OPTIONS}
        for status, count in db.session.query(Tenant.status, db.func.count(Tenant.id)).group_by(
            Tenant.status
        ):
            tenant_counts[status] = count

        completed = PlatformPayment.query.filter_by(status="completed")
        total_revenue = sum(payment.amount_cents for payment in completed)
        monthly_revenue = sum(
            payment.amount_cents
            for payment in completed
            if payment.paid_at is not None
            and month_begin <= as_utc(payment.paid_at) < month_finish
        )

        return jsonify(
            {
                "tenants": {"total": sum(tenant_counts.values()), **tenant_counts},
                "revenue": {
                    "total_cents": total_revenue,
                    "this_month_cents": monthly_revenue,
                },
                "pending_payments": PlatformPayment.query.filter_by(status="pending").count(),
                "active_subscriptions": Subscription.query.filter(
                    Subscription.status == "active", Subscription.ends_at > now
                ).count(),
            }
        )

    @app.get("/admin/sms-gateway")
    @super_admin_required
    def admin_sms_gateway():
        settings = get_sms_gateway_settings()
        return jsonify(settings.to_dict() if settings else None)

    @app.post("/admin/sms-gateway")
    @super_admin_required
    def admin_update_sms_gateway():
        data = _payload()
        settings = get_sms_gateway_settings()
        if settings is None:
            settings = SMSGatewaySettings()
            db.session.add(settings)
        if "provider" in data:
            settings.provider = _choice(data.get("provider"), SMS_PROVIDERS, settings.provider or "smsnoc", "provider")
        if "is_enabled" in data:
            settings.is_enabled = is_truthy(data.get("is_enabled"))
        if "api_url" in data:
            settings.api_url = _text(data, "api_url")
        if "api_key" in data and data.get("api_key"):
            settings.api_key = str(data.get("api_key")).strip()
        if "sender_id" in data:
            settings.sender_id = _text(data, "sender_id")
        log_activity("sms_gateway_updated", entity_type="sms_gateway", tenant_id=None)
        _commit("update SMS gateway settings")
        return jsonify(settings.to_dict())

    @app.get("/admin/activity-logs")
    @super_admin_required
    def admin_activity_logs():
        page, page_size = page_args()
        query = ActivityLog.query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        tenant_id = _coerce_int(request.args.get("tenant_id"))
        if tenant_id:
            query = query.filter(ActivityLog.tenant_id == tenant_id)
        action = request.args.get("action")
        if action:
            query = query.filter(ActivityLog.action == action)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    # Tenant subscription billing

    def _billing_tenant() -> Tenant:
        tenant = _resolve_request_tenant(g.user)
        if tenant is None:
            abort(400, description="No ISP workspace is linked to this account.")
        return tenant

    @app.get("/billing/subscription")
    @login_required
    def billing_subscription():
        tenant = _billing_tenant()
        now = utcnow()
        current = get_active_subscription(tenant, now)
        latest = (
            Subscription.query.filter_by(tenant_id=tenant.id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )
        days_left = None
        if current is not None:
            days_left = max(0, (as_utc(current.ends_at) - now).days)
        elif tenant.status == "trial" and tenant.trial_ends_at is not None:
            days_left = max(0, (as_utc(tenant.trial_ends_at) - now).days)

        packages = PlatformPackage.query.filter_by(is_active=True).order_by(
            PlatformPackage.sort_order.asc()
        )
        return jsonify(
            {
                "tenant": tenant.to_dict(),
                "subscription": current.to_dict() if current else None,
                "latest_subscription": latest.to_dict() if latest else None,
                "days_left": days_left,
                "packages": [package.to_dict() for package in packages],
                "stripe_enabled": stripe_active(),
                "stripe_publishable_key": current_app.config.get("STRIPE_PUBLISHABLE_KEY"),
            }
        )

    @app.get("/billing/history")
    @login_required
    def billing_history():
        tenant = _billing_tenant()
        invoices = PlatformInvoice.query.filter_by(tenant_id=tenant.id).order_by(
            PlatformInvoice.created_at.desc(), PlatformInvoice.id.desc()
        )
        payments = PlatformPayment.query.filter_by(tenant_id=tenant.id).order_by(
            PlatformPayment.created_at.desc(), PlatformPayment.id.desc()
        )
        return jsonify(
            {
                "invoices": [invoice.to_dict() for invoice in invoices],
                "payments": [payment.to_dict() for payment in payments],
            }
        )

    @app.post("/billing/pay")
    @login_required
    def billing_pay():
        tenant = _billing_tenant()
        data = _payload()
        invoice_id = _coerce_int(data.get("invoice_id"))
        if invoice_id:
            invoice = db.session.get(PlatformInvoice, invoice_id)
            if invoice is None or invoice.tenant_id != tenant.id:
                abort(404)
        else:
            invoice = (
                PlatformInvoice.query.filter_by(tenant_id=tenant.id, status="unpaid")
                .order_by(PlatformInvoice.created_at.desc(), PlatformInvoice.id.desc())
                .first()
            )
        if invoice is None:
            raise ValidationError("There is no unpaid invoice to pay.")
        if invoice.status == "paid":
            raise ValidationError(f"Invoice {invoice.invoice_number} is already paid.")

        method = _choice(data.get("payment_method"), PLATFORM_PAYMENT_METHODS, "manual", "payment method")
        payment = PlatformPayment(
            tenant_id=tenant.id,
            invoice=invoice,
            subscription_id=invoice.subscription_id,
            amount_cents=invoice.total_cents,
            payment_method=method,
            transaction_id=_text(data, "transaction_id"),
            notes=_text(data, "notes"),
            status="pending",
        )

        if method == "stripe":
            if not stripe_active():
                raise ValidationError("Card payments are not available right now.")
            db.session.add(payment)
            db.session.flush()
            intent = ensure_platform_payment_intent(invoice, payment, tenant)
            _commit("create Stripe payment intent")
            return (
                jsonify(
                    {
                        "payment": payment.to_dict(),
                        "client_secret": getattr(intent, "client_secret", None),
                    }
                ),
                201,
            )

        if method != "manual" and not payment.transaction_id:
            raise ValidationError("Enter the transaction reference for this payment.")
        db.session.add(payment)
        db.session.flush()
        log_activity(
            "payment_submitted",
            entity_type="platform_payment",
            entity_id=payment.id,
            tenant_id=tenant.id,
            details={"method": method},
        )
        _commit("record platform payment")
        return jsonify({"payment": payment.to_dict()}), 201

    @app.post("/billing/renew")
    @login_required
    def billing_renew():
        tenant = _billing_tenant()
        data = _payload()
        now = utcnow()
        current = get_active_subscription(tenant, now)
        latest = (
            Subscription.query.filter_by(tenant_id=tenant.id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

        reference = current or latest
        package_id = _coerce_int(data.get("package_id"))
        if package_id:
            package = db.session.get(PlatformPackage, package_id)
        else:
            package = reference.package if reference else None
        if package is None or not package.is_active:
            raise ValidationError("Select an active package to renew.")

        default_cycle = reference.billing_cycle if reference else "monthly"
        billing_cycle = _choice(data.get("billing_cycle"), list(BILLING_CYCLE_DAYS), default_cycle, "billing cycle")
        starts_at = as_utc(current.ends_at) if current else now

        subscription, invoice = start_subscription(
            tenant, package, billing_cycle, activate=False, starts_at=starts_at
        )
        db.session.flush()
        log_activity(
            "subscription_renewal_requested",
            entity_type="subscription",
            entity_id=subscription.id,
            tenant_id=tenant.id,
        )
        _commit("renew subscription")
        return jsonify({"subscription": subscription.to_dict(), "invoice": invoice.to_dict()}), 201

    @app.post("/stripe/webhook")
    def stripe_webhook():
        if not stripe_active():
            return jsonify({"status": "disabled"}), 200

        payload = request.data
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            else:
                json_payload = json.loads(payload.decode("utf-8"))
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
        except (ValueError, SignatureVerificationError, StripeError) as error:
            return jsonify({"error": str(error)}), 400

        handled = handle_stripe_event(event)
        if handled:
            db.session.commit()
            return jsonify({"status": "ok"}), 200

        db.session.rollback()
        return jsonify({"status": "ignored"}), 200

    # ISP catalogue: packages and areas

    def _apply_isp_package_fields(package: ISPPackage, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Package name is required.")
            package.name = name
        if "description" in data:
            package.description = _text(data, "description")
        if "download_speed" in data:
            package.download_speed = max(0, _coerce_int(data.get("download_speed")) or 0)
        if "upload_speed" in data:
            package.upload_speed = max(0, _coerce_int(data.get("upload_speed")) or 0)
        if "speed_unit" in data:
            package.speed_unit = _choice(data.get("speed_unit"), ["mbps", "kbps", "gbps"], "mbps", "speed unit")
        if "price" in data:
            package.price_cents = parse_amount_cents(data.get("price"), field="price")
        if "validity_days" in data:
            package.validity_days = max(1, _coerce_int(data.get("validity_days")) or 30)
        if "is_active" in data:
            package.is_active = is_truthy(data.get("is_active"))
        if "sort_order" in data:
            package.sort_order = _coerce_int(data.get("sort_order")) or 0

    @app.get("/isp/packages")
    @tenant_access_required
    def list_isp_packages():
        packages = ISPPackage.query.filter_by(tenant_id=g.tenant.id).order_by(
            ISPPackage.sort_order.asc(), ISPPackage.id.asc()
        )
        return jsonify({"items": [package.to_dict() for package in packages]})

    @app.post("/isp/packages")
    @tenant_access_required
    @role_required("admin", "operator")
    def create_isp_package():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Package name is required.")
        package = ISPPackage(tenant_id=g.tenant.id, validity_days=30)
        _apply_isp_package_fields(package, data)
        db.session.add(package)
        db.session.flush()
        log_activity("package_created", entity_type="isp_package", entity_id=package.id)
        _commit("create ISP package")
        return jsonify(package.to_dict()), 201

    @app.post("/isp/packages/<int:package_id>")
    @tenant_access_required
    @role_required("admin", "operator")
    def update_isp_package(package_id: int):
        package = _tenant_record(ISPPackage, package_id)
        _apply_isp_package_fields(package, _payload())
        log_activity("package_updated", entity_type="isp_package", entity_id=package.id)
        _commit("update ISP package")
        return jsonify(package.to_dict())

    @app.post("/isp/packages/<int:package_id>/delete")
    @tenant_access_required
    @role_required("admin", "operator")
    def delete_isp_package(package_id: int):
        package = _tenant_record(ISPPackage, package_id)
        if Customer.query.filter_by(package_id=package.id).first():
            raise ValidationError("Customers are assigned to that package. Deactivate it instead.")
        db.session.delete(package)
        log_activity("package_deleted", entity_type="isp_package", entity_id=package_id)
        _commit("delete ISP package")
        return jsonify({"status": "deleted", "id": package_id})

    def _apply_area_fields(area: Area, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Area name is required.")
            area.name = name
        for field in ("district", "upazila", "description"):
            if field in data:
                setattr(area, field, _text(data, field))
        if "olt_id" in data:
            olt_id = _coerce_int(data.get("olt_id"))
            area.olt_id = _tenant_record(OLT, olt_id).id if olt_id else None

    @app.get("/isp/areas")
    @tenant_access_required
    def list_areas():
        areas = Area.query.filter_by(tenant_id=g.tenant.id).order_by(Area.name.asc())
        return jsonify({"items": [area.to_dict() for area in areas]})

    @app.post("/isp/areas")
    @tenant_access_required
    @role_required("admin", "operator")
    def create_area():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Area name is required.")
        area = Area(tenant_id=g.tenant.id)
        _apply_area_fields(area, data)
        db.session.add(area)
        _commit("create area")
        return jsonify(area.to_dict()), 201

    @app.post("/isp/areas/<int:area_id>")
    @tenant_access_required
    @role_required("admin", "operator")
    def update_area(area_id: int):
        area = _tenant_record(Area, area_id)
        _apply_area_fields(area, _payload())
        _commit("update area")
        return jsonify(area.to_dict())

    @app.post("/isp/areas/<int:area_id>/delete")
    @tenant_access_required
    @role_required("admin", "operator")
    def delete_area(area_id: int):
        area = _tenant_record(Area, area_id)
        Customer.query.filter_by(tenant_id=g.tenant.id, area_id=area.id).update({"area_id": None})
        db.session.delete(area)
        _commit("delete area")
        return jsonify({"status": "deleted", "id": area_id})

    # Customers

    def _apply_customer_fields(customer: Customer, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Customer name is required.")
            customer.name = name
        if "phone" in data:
            customer.phone = normalize_phone_number(data.get("phone")) or None
        if "alt_phone" in data:
            customer.alt_phone = normalize_phone_number(data.get("alt_phone")) or None
        for field in (
            "email",
            "address",
            "onu_mac",
            "pon_port",
            "router_mac",
            "pppoe_username",
            "pppoe_password",
            "notes",
        ):
            if field in data:
                setattr(customer, field, _text(data, field))
        if "onu_index" in data:
            customer.onu_index = _coerce_int(data.get("onu_index"))
        if "onu_id" in data:
            onu_id = _coerce_int(data.get("onu_id"))
            customer.onu_id = _tenant_record(ONU, onu_id).id if onu_id else None
        if "area_id" in data:
            area_id = _coerce_int(data.get("area_id"))
            customer.area = _tenant_record(Area, area_id) if area_id else None
        if "reseller_id" in data:
            reseller_id = _coerce_int(data.get("reseller_id"))
            customer.reseller = _tenant_record(Reseller, reseller_id) if reseller_id else None
        if "package_id" in data:
            package_id = _coerce_int(data.get("package_id"))
            customer.package = _tenant_record(ISPPackage, package_id) if package_id else None
        if "connection_date" in data:
            customer.connection_date = parse_date(data.get("connection_date"))
        if "expiry_date" in data:
            customer.expiry_date = parse_date(data.get("expiry_date"))
        if "monthly_bill" in data:
            customer.monthly_bill_cents = parse_amount_cents(
                data.get("monthly_bill"), field="monthly_bill", required=False
            )
        if "status" in data:
            customer.status = _choice(data.get("status"), CUSTOMER_STATUS_OPTIONS, customer.status or "active", "status")
        if "is_auto_disable" in data:
            customer.is_auto_disable = is_truthy(data.get("is_auto_disable"))

    @app.get("/isp/customers")
    @tenant_access_required
    @module_required("billing")
    def list_customers():
        page, page_size = page_args()
        customers = (
            Customer.query.filter_by(tenant_id=g.tenant.id).order_by(Customer.id.desc()).all()
        )
        records = filter_records(
            [customer.to_dict() for customer in customers],
            request.args.get("search"),
            ("name", "customer_code", "phone", "phone_display", "pppoe_username", "email"),
            {
                "status": request.args.get("status"),
                "area_id": request.args.get("area_id"),
                "package_id": request.args.get("package_id"),
                "reseller_id": request.args.get("reseller_id"),
            },
        )
        if is_truthy(request.args.get("due_only")):
            records = [record for record in records if record["due_amount_cents"] > 0]
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/customers")
    @tenant_access_required
    @module_required("billing")
    def create_customer():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Customer name is required.")

        customer = Customer(
            tenant_id=g.tenant.id,
            customer_code=generate_customer_code(g.tenant.id),
            status="active",
            connection_date=date.today(),
        )
        _apply_customer_fields(customer, data)
        if not customer.monthly_bill_cents and customer.package is not None:
            customer.monthly_bill_cents = customer.package.price_cents
        if data.get("portal_password"):
            customer.portal_password_hash = generate_password_hash(str(data["portal_password"]))
        db.session.add(customer)
        db.session.flush()
        log_activity(
            "customer_created",
            entity_type="customer",
            entity_id=customer.id,
            details={"customer_code": customer.customer_code},
        )
        _commit("create customer")
        return jsonify(customer.to_dict()), 201

    @app.get("/isp/customers/<int:customer_id>")
    @tenant_access_required
    @module_required("billing")
    def customer_profile(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        bills = (
            CustomerBill.query.filter_by(customer_id=customer.id)
            .order_by(CustomerBill.bill_date.desc(), CustomerBill.id.desc())
            .limit(12)
        )
        payments = (
            CustomerPayment.query.filter_by(customer_id=customer.id)
            .order_by(CustomerPayment.payment_date.desc(), CustomerPayment.id.desc())
            .limit(12)
        )
        recharges = (
            CustomerRecharge.query.filter_by(customer_id=customer.id)
            .order_by(CustomerRecharge.recharge_date.desc(), CustomerRecharge.id.desc())
            .limit(12)
        )
        payload = customer.to_dict()
        payload.update(
            {
                "package": customer.package.to_dict() if customer.package else None,
                "area": customer.area.to_dict() if customer.area else None,
                "days_until_expiry": customer.days_until_expiry(),
                "bills": [bill.to_dict() for bill in bills],
                "payments": [payment.to_dict() for payment in payments],
                "recharges": [recharge.to_dict() for recharge in recharges],
            }
        )
        return jsonify(payload)

    @app.post("/isp/customers/<int:customer_id>")
    @tenant_access_required
    @module_required("billing")
    def update_customer(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        _apply_customer_fields(customer, _payload())
        log_activity("customer_updated", entity_type="customer", entity_id=customer.id)
        _commit("update customer")
        return jsonify(customer.to_dict())

    @app.post("/isp/customers/<int:customer_id>/delete")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def delete_customer(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        code = customer.customer_code
        db.session.delete(customer)
        log_activity(
            "customer_deleted",
            entity_type="customer",
            entity_id=customer_id,
            details={"customer_code": code},
        )
        _commit("delete customer")
        return jsonify({"status": "deleted", "id": customer_id})

    @app.post("/isp/customers/bulk")
    @tenant_access_required
    @module_required("billing")
    def bulk_update_customers():
        data = _payload()
        action = data.get("action")
        ids = {_coerce_int(value) for value in (data.get("ids") or [])} - {None}
        if not ids:
            raise ValidationError("Select at least one customer.")
        customers = Customer.query.filter(
            Customer.tenant_id == g.tenant.id, Customer.id.in_(ids)
        ).all()

        if action == "status":
            status = _choice(data.get("status"), CUSTOMER_STATUS_OPTIONS, "", "status")
            if not status:
                raise ValidationError("Choose the status to apply.")
            for customer in customers:
                customer.status = status
        elif action == "delete":
            if not (g.user.is_super_admin or g.user.is_owner or g.user.role in {"admin", "operator"}):
                return jsonify({"error": "You do not have permission to delete customers.", "reason": "forbidden"}), 403
            for customer in customers:
                db.session.delete(customer)
        elif action == "assign_area":
            area_id = _coerce_int(data.get("area_id"))
            area = _tenant_record(Area, area_id) if area_id else None
            for customer in customers:
                customer.area = area
        elif action == "assign_package":
            package = _tenant_record(ISPPackage, _coerce_int(data.get("package_id")) or 0)
            for customer in customers:
                customer.package = package
                customer.monthly_bill_cents = package.price_cents
        else:
            raise ValidationError("Unknown bulk action.")

        log_activity(
            "customers_bulk_update",
            entity_type="customer",
            details={"action": action, "count": len(customers)},
        )
        _commit("apply bulk customer action")
        return jsonify({"action": action, "affected": len(customers)})

    @app.post("/isp/customers/import")
    @tenant_access_required
    @module_required("billing")
    def import_customers():
        upload = request.files.get("file")
        if upload is not None:
            raw_text = upload.read().decode("utf-8-sig", errors="replace")
        else:
            raw_text = _payload().get("csv") or ""
        result = import_customers_csv(g.tenant.id, raw_text)
        log_activity(
            "customers_imported",
            entity_type="customer",
            details={"created": result["created"], "skipped": result["skipped"]},
        )
        _commit("import customers")
        return jsonify(result)

    @app.get("/isp/customers/export")
    @tenant_access_required
    @module_required("billing")
    def export_customers():
        customers = Customer.query.filter_by(tenant_id=g.tenant.id).order_by(Customer.id.asc())
        columns = [
            "customer_code",
            "name",
            "phone",
            "email",
            "address",
            "pppoe_username",
            "package",
            "area",
            "monthly_bill",
            "due_amount",
            "status",
            "expiry_date",
        ]
        rows = [
            {
                "customer_code": customer.customer_code,
                "name": customer.name,
                "phone": customer.phone or "",
                "email": customer.email or "",
                "address": customer.address or "",
                "pppoe_username": customer.pppoe_username or "",
                "package": customer.package.name if customer.package else "",
                "area": customer.area.name if customer.area else "",
                "monthly_bill": format_cents(customer.monthly_bill_cents),
                "due_amount": format_cents(customer.due_amount_cents),
                "status": customer.status,
                "expiry_date": _iso(customer.expiry_date) or "",
            }
            for customer in customers
        ]
        return csv_response(rows_to_csv(columns, rows), f"customers-{date.today():%Y%m%d}.csv")

    def _recharge_from_payload(customer: Customer, data: dict, *, collected_by: User) -> CustomerRecharge:
        months = _coerce_int(data.get("months")) or 1
        discount = parse_amount_cents(data.get("discount"), field="discount", required=False)
        amount = parse_amount_cents(data.get("amount"), required=False)
        if not amount and data.get("amount") in (None, ""):
            base = customer.package.price_cents if customer.package else customer.monthly_bill_cents
            amount = max(0, base * months - discount)
        return recharge_customer(
            customer,
            amount_cents=amount,
            months=months,
            payment_method=_choice(
                data.get("payment_method"), CUSTOMER_PAYMENT_METHODS, "cash", "payment method"
            ),
            discount_cents=discount,
            notes=_text(data, "notes"),
            collected_by=collected_by,
        )

    @app.post("/isp/customers/<int:customer_id>/recharge")
    @tenant_access_required
    @module_required("billing")
    def recharge_customer_route(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        recharge = _recharge_from_payload(customer, _payload(), collected_by=g.user)
        db.session.flush()
        log_activity(
            "customer_recharged",
            entity_type="customer",
            entity_id=customer.id,
            details={"months": recharge.months, "amount_cents": recharge.amount_cents},
        )
        _commit("recharge customer")
        return jsonify({"recharge": recharge.to_dict(), "customer": customer.to_dict()}), 201

    @app.get("/isp/collections")
    @tenant_access_required
    @module_required("billing")
    def list_collections():
        page, page_size = page_args()
        query = MultiCollection.query.filter_by(tenant_id=g.tenant.id).order_by(
            MultiCollection.created_at.desc(), MultiCollection.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/collections")
    @tenant_access_required
    @module_required("billing")
    def create_collection():
        data = _payload()
        entries = data.get("items") or []
        if not isinstance(entries, list) or not entries:
            raise ValidationError("Add at least one customer to the collection.")
        payment_method = _choice(data.get("payment_method"), CUSTOMER_PAYMENT_METHODS, "cash", "payment method")

        collection = MultiCollection(
            tenant_id=g.tenant.id,
            payment_method=payment_method,
            notes=_text(data, "notes"),
            collected_by=g.user.id,
        )
        db.session.add(collection)
        total = 0
        for entry in entries:
            customer = _tenant_record(Customer, _coerce_int(entry.get("customer_id")) or 0)
            recharge = _recharge_from_payload(
                customer,
                {**entry, "payment_method": payment_method},
                collected_by=g.user,
            )
            db.session.flush()
            collection.items.append(
                MultiCollectionItem(
                    customer_id=customer.id,
                    recharge_id=recharge.id,
                    amount_cents=recharge.amount_cents,
                    months=recharge.months,
                )
            )
            total += recharge.amount_cents

        collection.total_amount_cents = total
        collection.customer_count = len(entries)
        db.session.flush()
        log_activity(
            "multi_collection",
            entity_type="multi_collection",
            entity_id=collection.id,
            details={"customers": len(entries), "total_cents": total},
        )
        _commit("record multi collection")
        return jsonify(collection.to_dict()), 201

    @app.post("/isp/customers/<int:customer_id>/portal-password")
    @tenant_access_required
    @module_required("billing")
    def set_customer_portal_password(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        password = str(_payload().get("password") or "").strip()
        generated = not password
        if generated:
            password = generate_password(8)
        elif len(password) < 6:
            raise ValidationError("Portal password must be at least 6 characters.")
        customer.portal_password_hash = generate_password_hash(password)
        log_activity("portal_password_set", entity_type="customer", entity_id=customer.id)
        _commit("set customer portal password")
        payload = {"status": "ok"}
        if generated:
            payload["password"] = password
        return jsonify(payload)

    @app.post("/isp/customers/expire")
    @tenant_access_required
    @module_required("billing")
    def expire_customers_route():
        expired = expire_customers(g.tenant.id)
        to_disable = [
            {"id": customer.id, "customer_code": customer.customer_code, "pppoe_username": customer.pppoe_username}
            for customer in expired
            if customer.is_auto_disable and customer.pppoe_username
        ]
        log_activity("customers_expired", entity_type="customer", details={"count": len(expired)})
        _commit("expire customers")
        return jsonify({"expired": len(expired), "disable": to_disable})

    # Billing

    @app.post("/isp/bills/generate")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def generate_bills_route():
        billing_month = (_text(_payload(), "billing_month") or f"{date.today():%Y-%m}")
        generation, bills = generate_bills(g.tenant.id, billing_month, user=g.user)
        db.session.flush()
        log_activity(
            "bills_generated",
            entity_type="bill_generation",
            entity_id=generation.id,
            details={"billing_month": billing_month, "count": len(bills)},
        )
        _commit("generate bills")
        return jsonify(
            {
                "generation": generation.to_dict(),
                "count": len(bills),
                "total_cents": generation.total_amount_cents,
            }
        ), 201

    @app.get("/isp/bills")
    @tenant_access_required
    @module_required("billing")
    def list_bills():
        page, page_size = page_args()
        query = CustomerBill.query.filter_by(tenant_id=g.tenant.id).order_by(
            CustomerBill.bill_date.desc(), CustomerBill.id.desc()
        )
        month = request.args.get("month")
        if month:
            month_bounds(month)
            query = query.filter(CustomerBill.billing_month == month)
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(CustomerBill.status == status)
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(CustomerBill.customer_id == customer_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/bills/<int:bill_id>/pay")
    @tenant_access_required
    @module_required("billing")
    def pay_bill(bill_id: int):
        bill = _tenant_record(CustomerBill, bill_id)
        data = _payload()
        if _text(data, "amount") is None:
            amount = bill.outstanding_cents
        else:
            amount = parse_amount_cents(data.get("amount"))
        payment = pay_customer_bill(
            bill,
            amount_cents=amount,
            payment_method=_choice(
                data.get("payment_method"), CUSTOMER_PAYMENT_METHODS, "cash", "payment method"
            ),
            reference=_text(data, "reference"),
            collected_by=g.user,
        )
        db.session.flush()
        log_activity(
            "bill_paid",
            entity_type="bill",
            entity_id=bill.id,
            details={"amount_cents": amount, "status": bill.status},
        )
        _commit("record bill payment")
        return jsonify({"bill": bill.to_dict(), "payment": payment.to_dict()})

    @app.post("/isp/bills/<int:bill_id>/cancel")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def cancel_bill(bill_id: int):
        bill = _tenant_record(CustomerBill, bill_id)
        if bill.status in {"paid", "cancelled"}:
            raise ValidationError(f"Bill {bill.bill_number} is already {bill.status}.")
        customer = bill.customer
        customer.due_amount_cents = max(0, (customer.due_amount_cents or 0) - bill.outstanding_cents)
        bill.status = "cancelled"
        log_activity("bill_cancelled", entity_type="bill", entity_id=bill.id)
        _commit("cancel bill")
        return jsonify(bill.to_dict())

    @app.post("/isp/bills/mark-overdue")
    @tenant_access_required
    @module_required("billing")
    def mark_overdue_route():
        updated = mark_overdue_bills(g.tenant.id)
        _commit("mark overdue bills")
        return jsonify({"updated": updated})

    @app.get("/isp/bills/<int:bill_id>/print")
    @tenant_access_required
    @module_required("billing")
    def print_bill(bill_id: int):
        bill = _tenant_record(CustomerBill, bill_id)
        customer = bill.customer
        tenant = g.tenant
        package_name = customer.package.name if customer.package else "Internet service"
        return jsonify(
            {
                "header": {
                    "name": tenant.name,
                    "address": tenant.address,
                    "phone": format_phone_display(tenant.phone) if tenant.phone else None,
                    "email": tenant.email,
                },
                "bill": bill.to_dict(),
                "customer": {
                    "customer_code": customer.customer_code,
                    "name": customer.name,
                    "phone": format_phone_display(customer.phone) if customer.phone else None,
                    "address": customer.address,
                    "package": package_name,
                },
                "lines": [
                    {
                        "description": f"{package_name} ({bill.billing_month})",
                        "amount": format_cents(bill.amount_cents),
                    }
                ],
                "totals": {
                    "subtotal": format_cents(bill.amount_cents),
                    "discount": format_cents(bill.discount_cents),
                    "tax": format_cents(bill.tax_cents),
                    "total": format_cents(bill.total_cents),
                    "paid": format_cents(bill.paid_amount_cents),
                    "due": format_cents(bill.outstanding_cents),
                },
            }
        )

    @app.get("/isp/payments")
    @tenant_access_required
    @module_required("billing")
    def list_customer_payments():
        page, page_size = page_args()
        query = CustomerPayment.query.filter_by(tenant_id=g.tenant.id).order_by(
            CustomerPayment.payment_date.desc(), CustomerPayment.id.desc()
        )
        start = parse_date(request.args.get("start"))
        end = parse_date(request.args.get("end"))
        if start or end:
            begin, finish = day_range(start or date(1970, 1, 1), end or date.today())
            query = query.filter(
                CustomerPayment.payment_date >= begin, CustomerPayment.payment_date < finish
            )
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(CustomerPayment.customer_id == customer_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    # Resellers

    def _apply_reseller_fields(reseller: Reseller, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Reseller name is required.")
            reseller.name = name
        if "phone" in data:
            reseller.phone = normalize_phone_number(data.get("phone")) or None
        for field in ("email", "address"):
            if field in data:
                setattr(reseller, field, _text(data, field))
        if "area_id" in data:
            area_id = _coerce_int(data.get("area_id"))
            reseller.area_id = _tenant_record(Area, area_id).id if area_id else None
        if "parent_id" in data:
            parent_id = _coerce_int(data.get("parent_id"))
            if parent_id and parent_id == reseller.id:
                raise ValidationError("A reseller cannot be its own parent.")
            reseller.parent_id = _tenant_record(Reseller, parent_id).id if parent_id else None
        if "commission_type" in data:
            reseller.commission_type = _choice(data.get("commission_type"), COMMISSION_TYPES, "percentage", "commission type")
        if "commission_value" in data:
            try:
                value = Decimal(str(data.get("commission_value") or "0").strip())
            except InvalidOperation as exc:
                raise ValidationError("Commission must be a number.") from exc
            if value < 0:
                raise ValidationError("Commission must not be negative.")
            reseller.commission_value = value
        if "max_customers" in data:
            reseller.max_customers = _coerce_int(data.get("max_customers"))
        if "username" in data:
            reseller.username = _text(data, "username")
        if data.get("password"):
            reseller.set_password(str(data["password"]))
        if "is_active" in data:
            reseller.is_active = is_truthy(data.get("is_active"))

    @app.get("/isp/resellers")
    @tenant_access_required
    @module_required("billing")
    def list_resellers():
        page, page_size = page_args()
        resellers = Reseller.query.filter_by(tenant_id=g.tenant.id).order_by(Reseller.id.asc()).all()
        records = []
        for reseller in resellers:
            record = reseller.to_dict()
            record["customer_count"] = len(reseller.customers)
            records.append(record)
        records = filter_records(records, request.args.get("search"), ("name", "code", "phone", "username"))
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/resellers")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def create_reseller():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Reseller name is required.")
        reseller = Reseller(
            tenant_id=g.tenant.id,
            code=generate_reseller_code(g.tenant.id),
            balance_cents=0,
        )
        _apply_reseller_fields(reseller, data)
        db.session.add(reseller)
        db.session.flush()
        log_activity("reseller_created", entity_type="reseller", entity_id=reseller.id)
        _commit("create reseller")
        return jsonify(reseller.to_dict()), 201

    @app.get("/isp/resellers/<int:reseller_id>")
    @tenant_access_required
    @module_required("billing")
    def reseller_detail(reseller_id: int):
        reseller = _tenant_record(Reseller, reseller_id)
        payload = reseller.to_dict()
        payload["customers"] = [customer.to_dict() for customer in reseller.customers]
        return jsonify(payload)

    @app.post("/isp/resellers/<int:reseller_id>")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def update_reseller(reseller_id: int):
        reseller = _tenant_record(Reseller, reseller_id)
        _apply_reseller_fields(reseller, _payload())
        log_activity("reseller_updated", entity_type="reseller", entity_id=reseller.id)
        _commit("update reseller")
        return jsonify(reseller.to_dict())

    @app.post("/isp/resellers/<int:reseller_id>/delete")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def delete_reseller(reseller_id: int):
        reseller = _tenant_record(Reseller, reseller_id)
        for customer in reseller.customers:
            customer.reseller = None
        db.session.delete(reseller)
        log_activity("reseller_deleted", entity_type="reseller", entity_id=reseller_id)
        _commit("delete reseller")
        return jsonify({"status": "deleted", "id": reseller_id})

    @app.post("/isp/resellers/<int:reseller_id>/balance")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def adjust_reseller_balance_route(reseller_id: int):
        reseller = _tenant_record(Reseller, reseller_id)
        data = _payload()
        transaction_type = _choice(data.get("type"), ["recharge", "deduction"], "recharge", "type")
        transaction = adjust_reseller_balance(
            reseller,
            transaction_type,
            parse_amount_cents(data.get("amount")),
            description=_text(data, "description"),
            user_id=g.user.id,
        )
        db.session.flush()
        log_activity(
            "reseller_balance_adjusted",
            entity_type="reseller",
            entity_id=reseller.id,
            details={"type": transaction_type, "amount_cents": transaction.amount_cents},
        )
        _commit("adjust reseller balance")
        return jsonify({"reseller": reseller.to_dict(), "transaction": transaction.to_dict()}), 201

    @app.get("/isp/resellers/<int:reseller_id>/transactions")
    @tenant_access_required
    @module_required("billing")
    def reseller_transactions(reseller_id: int):
        reseller = _tenant_record(Reseller, reseller_id)
        page, page_size = page_args()
        query = ResellerTransaction.query.filter_by(reseller_id=reseller.id).order_by(
            ResellerTransaction.created_at.desc(), ResellerTransaction.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    # Reseller portal

    @app.post("/reseller/login")
    def reseller_login():
        data = _payload()
        username = _text(data, "username")
        password = data.get("password") or ""
        tenant_id = _coerce_int(data.get("tenant_id"))
        query = Reseller.query.filter_by(username=username) if username else None
        if query is not None and tenant_id:
            query = query.filter_by(tenant_id=tenant_id)
        candidates = query.all() if query is not None else []
        reseller = next((item for item in candidates if item.check_password(password)), None)
        if reseller is None or not reseller.is_active:
            current_app.logger.warning("Failed reseller login for %s", username or "<blank>")
            return jsonify({"error": "Invalid username or password."}), 401

        tenant = db.session.get(Tenant, reseller.tenant_id)
        if tenant is None or tenant.status in {"suspended", "cancelled"}:
            return jsonify({"error": "This service provider account is unavailable.", "reason": "suspended"}), 403

        session[RESELLER_SESSION_KEY] = reseller.id
        return jsonify({"reseller": reseller.to_dict()})

    @app.get("/reseller/logout")
    def reseller_logout():
        session.pop(RESELLER_SESSION_KEY, None)
        return jsonify({"status": "ok"})

    @app.get("/reseller/dashboard")
    @reseller_login_required
    def reseller_dashboard(reseller: Reseller):
        customers = reseller.customers
        transactions = (
            ResellerTransaction.query.filter_by(reseller_id=reseller.id)
            .order_by(ResellerTransaction.created_at.desc(), ResellerTransaction.id.desc())
            .limit(10)
        )
        return jsonify(
            {
                "reseller": reseller.to_dict(),
                "balance_cents": reseller.balance_cents,
                "customers": {
                    "total": len(customers),
                    "active": sum(1 for customer in customers if customer.status == "active"),
                    "expired": sum(1 for customer in customers if customer.status == "expired"),
                },
                "recent_transactions": [transaction.to_dict() for transaction in transactions],
            }
        )

    @app.get("/reseller/customers")
    @reseller_login_required
    def reseller_customers(reseller: Reseller):
        page, page_size = page_args()
        records = filter_records(
            [customer.to_dict() for customer in reseller.customers],
            request.args.get("search"),
            ("name", "customer_code", "phone", "phone_display", "pppoe_username"),
            {"status": request.args.get("status")},
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/reseller/customers")
    @reseller_login_required
    def reseller_create_customer(reseller: Reseller):
        if reseller.max_customers is not None and len(reseller.customers) >= reseller.max_customers:
            return (
                jsonify(
                    {
                        "error": f"Customer limit reached ({reseller.max_customers}).",
                        "reason": "limit_reached",
                    }
                ),
                403,
            )
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Customer name is required.")
        customer = Customer(
            tenant_id=reseller.tenant_id,
            customer_code=generate_customer_code(reseller.tenant_id),
            status="active",
            connection_date=date.today(),
            reseller=reseller,
            area_id=reseller.area_id,
        )
        allowed = {
            key: data[key]
            for key in ("name", "phone", "email", "address", "pppoe_username", "pppoe_password", "package_id")
            if key in data
        }
        _apply_customer_fields(customer, allowed)
        if customer.package is not None:
            customer.monthly_bill_cents = customer.package.price_cents
        db.session.add(customer)
        db.session.flush()
        log_activity(
            "reseller_customer_created",
            entity_type="customer",
            entity_id=customer.id,
            tenant_id=reseller.tenant_id,
            details={"reseller_id": reseller.id},
        )
        _commit("create reseller customer")
        return jsonify(customer.to_dict()), 201

    @app.post("/reseller/customers/<int:customer_id>/recharge")
    @reseller_login_required
    def reseller_recharge(reseller: Reseller, customer_id: int):
        customer = db.session.get(Customer, customer_id)
        if customer is None or customer.tenant_id != reseller.tenant_id:
            abort(404)
        months = _coerce_int(_payload().get("months")) or 1
        recharge = reseller_recharge_customer(reseller, customer, months)
        db.session.flush()
        log_activity(
            "reseller_recharge",
            entity_type="customer",
            entity_id=customer.id,
            tenant_id=reseller.tenant_id,
            details={"reseller_id": reseller.id, "months": months},
        )
        _commit("reseller recharge")
        return jsonify(
            {
                "recharge": recharge.to_dict(),
                "customer": customer.to_dict(),
                "balance_cents": reseller.balance_cents,
            }
        ), 201

    @app.get("/reseller/transactions")
    @reseller_login_required
    def reseller_own_transactions(reseller: Reseller):
        page, page_size = page_args()
        query = ResellerTransaction.query.filter_by(reseller_id=reseller.id).order_by(
            ResellerTransaction.created_at.desc(), ResellerTransaction.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    # Support tickets

    def _ticket_author_name(user: User | None) -> str:
        if user is None:
            return "Staff"
        return user.full_name or user.email

    def _apply_ticket_status(ticket: SupportTicket, status: str) -> None:
        if status == ticket.status:
            return
        ticket.status = status
        if status == "resolved":
            ticket.resolved_at = utcnow()
        elif status == "closed":
            ticket.closed_at = utcnow()

    @app.get("/isp/tickets")
    @tenant_access_required
    def list_tickets():
        page, page_size = page_args()
        tickets = (
            SupportTicket.query.filter_by(tenant_id=g.tenant.id)
            .order_by(SupportTicket.created_at.desc(), SupportTicket.id.desc())
            .all()
        )
        records = filter_records(
            [ticket.to_dict() for ticket in tickets],
            request.args.get("search"),
            ("ticket_number", "subject", "customer_name"),
            {
                "status": request.args.get("status"),
                "priority": request.args.get("priority"),
                "category_id": request.args.get("category_id"),
            },
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.get("/isp/tickets/stats")
    @tenant_access_required
    def ticket_stats():
        counts = {status: 0 for status in TICKET_STATUS_OPTIONS}
        for status, count in (
            db.session.query(SupportTicket.status, db.func.count(SupportTicket.id))
            .filter(SupportTicket.tenant_id == g.tenant.id)
            .group_by(SupportTicket.status)
        ):
            counts[status] = count
        return jsonify({"total": sum(counts.values()), **counts})

    @app.post("/isp/tickets")
    @tenant_access_required
    def create_ticket():
        data = _payload()
        subject = _text(data, "subject")
        if not subject:
            raise ValidationError("Ticket subject is required.")
        customer_id = _coerce_int(data.get("customer_id"))
        category_id = _coerce_int(data.get("category_id"))
        assigned_to = _coerce_int(data.get("assigned_to"))
        ticket = SupportTicket(
            tenant_id=g.tenant.id,
            ticket_number=generate_ticket_number(g.tenant.id),
            subject=subject,
            description=_text(data, "description"),
            priority=_choice(data.get("priority"), TICKET_PRIORITY_OPTIONS, "medium", "priority"),
            status="open",
            customer=_tenant_record(Customer, customer_id) if customer_id else None,
            category=_tenant_record(TicketCategory, category_id) if category_id else None,
            assigned_to=_tenant_record(User, assigned_to).id if assigned_to else None,
        )
        db.session.add(ticket)
        db.session.flush()
        log_activity("ticket_created", entity_type="ticket", entity_id=ticket.id)
        _commit("create ticket")
        return jsonify(ticket.to_dict()), 201

    @app.get("/isp/tickets/<int:ticket_id>")
    @tenant_access_required
    def ticket_detail(ticket_id: int):
        return jsonify(_tenant_record(SupportTicket, ticket_id).to_dict())

    @app.post("/isp/tickets/<int:ticket_id>")
    @tenant_access_required
    def update_ticket(ticket_id: int):
        ticket = _tenant_record(SupportTicket, ticket_id)
        data = _payload()
        if "subject" in data:
            subject = _text(data, "subject")
            if not subject:
                raise ValidationError("Ticket subject is required.")
            ticket.subject = subject
        if "description" in data:
            ticket.description = _text(data, "description")
        if "priority" in data:
            ticket.priority = _choice(data.get("priority"), TICKET_PRIORITY_OPTIONS, ticket.priority, "priority")
        if "category_id" in data:
            category_id = _coerce_int(data.get("category_id"))
            ticket.category = _tenant_record(TicketCategory, category_id) if category_id else None
        if "assigned_to" in data:
            assigned_to = _coerce_int(data.get("assigned_to"))
            ticket.assigned_to = _tenant_record(User, assigned_to).id if assigned_to else None
        if "resolution_notes" in data:
            ticket.resolution_notes = _text(data, "resolution_notes")
        if "status" in data:
            _apply_ticket_status(
                ticket, _choice(data.get("status"), TICKET_STATUS_OPTIONS, ticket.status, "status")
            )
        log_activity(
            "ticket_updated",
            entity_type="ticket",
            entity_id=ticket.id,
            details={"status": ticket.status},
        )
        _commit("update ticket")
        return jsonify(ticket.to_dict())

    @app.post("/isp/tickets/<int:ticket_id>/delete")
    @tenant_access_required
    @role_required("admin", "operator")
    def delete_ticket(ticket_id: int):
        ticket = _tenant_record(SupportTicket, ticket_id)
        db.session.delete(ticket)
        _commit("delete ticket")
        return jsonify({"status": "deleted", "id": ticket_id})

    @app.post("/isp/tickets/<int:ticket_id>/comments")
    @tenant_access_required
    def add_ticket_comment(ticket_id: int):
        ticket = _tenant_record(SupportTicket, ticket_id)
        data = _payload()
        text_body = _text(data, "comment")
        if not text_body:
            raise ValidationError("Comment text is required.")
        comment = TicketComment(
            comment=text_body,
            is_internal=is_truthy(data.get("is_internal")),
            author_name=_ticket_author_name(g.user),
            author_type="staff",
        )
        ticket.comments.append(comment)
        if ticket.status == "open":
            ticket.status = "in_progress"
        _commit("add ticket comment")
        return jsonify(comment.to_dict()), 201

    @app.get("/isp/ticket-categories")
    @tenant_access_required
    def list_ticket_categories():
        categories = TicketCategory.query.filter_by(tenant_id=g.tenant.id).order_by(TicketCategory.name.asc())
        return jsonify({"items": [category.to_dict() for category in categories]})

    @app.post("/isp/ticket-categories")
    @tenant_access_required
    @role_required("admin", "operator")
    def create_ticket_category():
        data = _payload()
        name = _text(data, "name")
        if not name:
            raise ValidationError("Category name is required.")
        category = TicketCategory(
            tenant_id=g.tenant.id,
            name=name,
            description=_text(data, "description"),
            color=_text(data, "color"),
        )
        db.session.add(category)
        _commit("create ticket category")
        return jsonify(category.to_dict()), 201

    # SMS

    @app.get("/isp/sms/templates")
    @tenant_access_required
    @module_required("sms_alerts")
    def list_sms_templates():
        templates = SMSTemplate.query.filter_by(tenant_id=g.tenant.id).order_by(
            SMSTemplate.is_system.desc(), SMSTemplate.name.asc()
        )
        return jsonify({"items": [template.to_dict() for template in templates]})

    def _apply_sms_template_fields(template: SMSTemplate, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Template name is required.")
            template.name = name
        if "message" in data:
            message = _text(data, "message")
            if not message:
                raise ValidationError("Template message is required.")
            template.message = message
            template.variables = sorted(set(TEMPLATE_VARIABLE_PATTERN.findall(message)))
        if "template_type" in data and not template.is_system:
            template.template_type = _choice(data.get("template_type"), SMS_TEMPLATE_TYPES, "custom", "template type")
        if "is_active" in data:
            template.is_active = is_truthy(data.get("is_active"))

    @app.post("/isp/sms/templates")
    @tenant_access_required
    @module_required("sms_alerts")
    def create_sms_template():
        data = _payload()
        if not _text(data, "name") or not _text(data, "message"):
            raise ValidationError("Template name and message are required.")
        template = SMSTemplate(tenant_id=g.tenant.id, template_type="custom", is_system=False)
        _apply_sms_template_fields(template, data)
        db.session.add(template)
        _commit("create SMS template")
        return jsonify(template.to_dict()), 201

    @app.post("/isp/sms/templates/<int:template_id>")
    @tenant_access_required
    @module_required("sms_alerts")
    def update_sms_template(template_id: int):
        template = _tenant_record(SMSTemplate, template_id)
        _apply_sms_template_fields(template, _payload())
        _commit("update SMS template")
        return jsonify(template.to_dict())

    @app.post("/isp/sms/templates/<int:template_id>/delete")
    @tenant_access_required
    @module_required("sms_alerts")
    def delete_sms_template(template_id: int):
        template = _tenant_record(SMSTemplate, template_id)
        if template.is_system:
            raise ValidationError("System templates cannot be deleted.")
        db.session.delete(template)
        _commit("delete SMS template")
        return jsonify({"status": "deleted", "id": template_id})

    @app.post("/isp/sms/send")
    @tenant_access_required
    @module_required("sms_alerts")
    def send_single_sms():
        data = _payload()
        phone = data.get("phone")
        message = _text(data, "message")
        customer_id = _coerce_int(data.get("customer_id"))
        customer = _tenant_record(Customer, customer_id) if customer_id else None
        template_id = _coerce_int(data.get("template_id"))
        if template_id:
            template = _tenant_record(SMSTemplate, template_id)
            context = customer_message_context(customer) if customer else {}
            message = render_template_text(template.message, context)
        if customer is not None and not phone:
            phone = customer.phone

        result = send_sms(g.tenant.id, phone, message)
        _commit("send SMS")
        status_code = 200 if result["success"] else 502
        return jsonify(result), status_code

    @app.get("/isp/sms/logs")
    @tenant_access_required
    @module_required("sms_alerts")
    def list_sms_logs():
        page, page_size = page_args()
        query = SMSLog.query.filter_by(tenant_id=g.tenant.id).order_by(
            SMSLog.created_at.desc(), SMSLog.id.desc()
        )
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(SMSLog.status == status)
        campaign_id = _coerce_int(request.args.get("campaign_id"))
        if campaign_id:
            query = query.filter(SMSLog.campaign_id == campaign_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.get("/isp/sms/campaigns")
    @tenant_access_required
    @module_required("sms_alerts")
    def list_sms_campaigns():
        page, page_size = page_args()
        query = SMSCampaign.query.filter_by(tenant_id=g.tenant.id).order_by(
            SMSCampaign.created_at.desc(), SMSCampaign.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/sms/campaigns")
    @tenant_access_required
    @module_required("sms_alerts")
    def create_sms_campaign():
        data = _payload()
        name = _text(data, "name")
        message = _text(data, "message")
        if not name or not message:
            raise ValidationError("Campaign name and message are required.")
        target = _choice(data.get("target"), SMS_CAMPAIGN_TARGETS, "all", "target")
        area_id = _coerce_int(data.get("area_id"))
        if area_id:
            _tenant_record(Area, area_id)

        campaign = SMSCampaign(
            tenant_id=g.tenant.id,
            name=name,
            message=message,
            target=target,
            area_id=area_id,
            status="draft",
            created_by=g.user.id,
        )
        db.session.add(campaign)
        db.session.flush()
        run_sms_campaign(campaign)
        log_activity(
            "sms_campaign_sent",
            entity_type="sms_campaign",
            entity_id=campaign.id,
            details={"sent": campaign.sent_count, "failed": campaign.failed_count},
        )
        _commit("run SMS campaign")
        return jsonify(campaign.to_dict()), 201

    @app.post("/isp/sms/due-reminders")
    @tenant_access_required
    @module_required("sms_alerts")
    def send_due_reminders():
        template = SMSTemplate.query.filter_by(
            tenant_id=g.tenant.id, template_type="bill_reminder", is_active=True
        ).order_by(SMSTemplate.is_system.asc(), SMSTemplate.id.asc()).first()
        if template is None:
            raise ValidationError("No active bill reminder template is configured.")

        sent = failed = 0
        for customer in resolve_campaign_recipients(g.tenant.id, "due"):
            message = render_template_text(template.message, customer_message_context(customer))
            if send_sms(g.tenant.id, customer.phone, message)["success"]:
                sent += 1
            else:
                failed += 1
        _commit("send due reminders")
        return jsonify({"sent": sent, "failed": failed})

    # Inventory

    def _apply_inventory_item_fields(item: InventoryItem, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Item name is required.")
            item.name = name
        for field in ("sku", "description"):
            if field in data:
                setattr(item, field, _text(data, field))
        if "category_id" in data:
            category_id = _coerce_int(data.get("category_id"))
            item.category = _tenant_record(InventoryCategory, category_id) if category_id else None
        if "min_quantity" in data:
            item.min_quantity = max(0, _coerce_int(data.get("min_quantity")) or 0)
        if "unit_price" in data:
            item.unit_price_cents = parse_amount_cents(data.get("unit_price"), field="unit_price", required=False)
        if "sale_price" in data:
            item.sale_price_cents = parse_amount_cents(data.get("sale_price"), field="sale_price", required=False)

    @app.get("/isp/inventory/items")
    @tenant_access_required
    @module_required("billing")
    def list_inventory_items():
        page, page_size = page_args()
        items = InventoryItem.query.filter_by(tenant_id=g.tenant.id).order_by(InventoryItem.name.asc()).all()
        if is_truthy(request.args.get("low_stock")):
            items = [item for item in items if item.is_low_stock]
        records = filter_records(
            [item.to_dict() for item in items],
            request.args.get("search"),
            ("name", "sku", "category_name"),
            {"category_id": request.args.get("category_id")},
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/inventory/items")
    @tenant_access_required
    @module_required("billing")
    def create_inventory_item():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Item name is required.")
        item = InventoryItem(tenant_id=g.tenant.id, quantity=0)
        _apply_inventory_item_fields(item, data)
        db.session.add(item)
        db.session.flush()
        opening = _coerce_int(data.get("quantity")) or 0
        if opening > 0:
            record_stock_movement(
                item,
                transaction_type="adjustment",
                change=opening,
                unit_price_cents=item.unit_price_cents,
                reference_type="opening_stock",
                reference_id=item.id,
                notes="Opening stock",
                user_id=g.user.id,
            )
        _commit("create inventory item")
        return jsonify(item.to_dict()), 201

    @app.post("/isp/inventory/items/<int:item_id>")
    @tenant_access_required
    @module_required("billing")
    def update_inventory_item(item_id: int):
        item = _tenant_record(InventoryItem, item_id)
        data = _payload()
        _apply_inventory_item_fields(item, data)
        if "quantity" in data:
            target = _coerce_int(data.get("quantity"))
            if target is None or target < 0:
                raise ValidationError("Quantity must be zero or more.")
            if target != item.quantity:
                record_stock_movement(
                    item,
                    transaction_type="adjustment",
                    change=target - (item.quantity or 0),
                    unit_price_cents=item.unit_price_cents,
                    reference_type="manual_adjustment",
                    reference_id=item.id,
                    notes=_text(data, "adjustment_note") or "Manual stock adjustment",
                    user_id=g.user.id,
                )
        _commit("update inventory item")
        return jsonify(item.to_dict())

    @app.post("/isp/inventory/items/<int:item_id>/delete")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def delete_inventory_item(item_id: int):
        item = _tenant_record(InventoryItem, item_id)
        InventoryLedger.query.filter_by(item_id=item.id).delete()
        db.session.delete(item)
        _commit("delete inventory item")
        return jsonify({"status": "deleted", "id": item_id})

    @app.get("/isp/inventory/summary")
    @tenant_access_required
    @module_required("billing")
    def inventory_summary():
        items = InventoryItem.query.filter_by(tenant_id=g.tenant.id).all()
        supplier_due = (
            db.session.query(db.func.coalesce(db.func.sum(Supplier.due_cents), 0))
            .filter(Supplier.tenant_id == g.tenant.id)
            .scalar()
        )
        return jsonify(
            {
                "item_count": len(items),
                "total_quantity": sum(item.quantity or 0 for item in items),
                "stock_value_cents": sum(item.stock_value_cents for item in items),
                "low_stock_count": sum(1 for item in items if item.is_low_stock),
                "supplier_due_cents": int(supplier_due or 0),
            }
        )

    @app.get("/isp/inventory/ledger")
    @tenant_access_required
    @module_required("billing")
    def inventory_ledger():
        page, page_size = page_args()
        query = InventoryLedger.query.filter_by(tenant_id=g.tenant.id).order_by(
            InventoryLedger.created_at.desc(), InventoryLedger.id.desc()
        )
        item_id = _coerce_int(request.args.get("item_id"))
        if item_id:
            query = query.filter(InventoryLedger.item_id == item_id)
        transaction_type = request.args.get("type")
        if transaction_type:
            query = query.filter(InventoryLedger.transaction_type == transaction_type)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.get("/isp/inventory/categories")
    @tenant_access_required
    @module_required("billing")
    def list_inventory_categories():
        categories = InventoryCategory.query.filter_by(tenant_id=g.tenant.id).order_by(InventoryCategory.name.asc())
        return jsonify({"items": [category.to_dict() for category in categories]})

    @app.post("/isp/inventory/categories")
    @tenant_access_required
    @module_required("billing")
    def create_inventory_category():
        data = _payload()
        name = _text(data, "name")
        if not name:
            raise ValidationError("Category name is required.")
        category = InventoryCategory(tenant_id=g.tenant.id, name=name, description=_text(data, "description"))
        db.session.add(category)
        _commit("create inventory category")
        return jsonify(category.to_dict()), 201

    def _apply_supplier_fields(supplier: Supplier, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("Supplier name is required.")
            supplier.name = name
        for field in ("company_name", "email", "address"):
            if field in data:
                setattr(supplier, field, _text(data, field))
        if "phone" in data:
            supplier.phone = normalize_phone_number(data.get("phone")) or None
        if "is_active" in data:
            supplier.is_active = is_truthy(data.get("is_active"))

    @app.get("/isp/inventory/suppliers")
    @tenant_access_required
    @module_required("billing")
    def list_suppliers():
        page, page_size = page_args()
        suppliers = Supplier.query.filter_by(tenant_id=g.tenant.id).order_by(Supplier.name.asc()).all()
        records = filter_records(
            [supplier.to_dict() for supplier in suppliers],
            request.args.get("search"),
            ("name", "company_name", "phone"),
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/inventory/suppliers")
    @tenant_access_required
    @module_required("billing")
    def create_supplier():
        data = _payload()
        if not _text(data, "name"):
            raise ValidationError("Supplier name is required.")
        supplier = Supplier(tenant_id=g.tenant.id, due_cents=0)
        _apply_supplier_fields(supplier, data)
        db.session.add(supplier)
        _commit("create supplier")
        return jsonify(supplier.to_dict()), 201

    @app.post("/isp/inventory/suppliers/<int:supplier_id>")
    @tenant_access_required
    @module_required("billing")
    def update_supplier(supplier_id: int):
        supplier = _tenant_record(Supplier, supplier_id)
        _apply_supplier_fields(supplier, _payload())
        _commit("update supplier")
        return jsonify(supplier.to_dict())

    @app.post("/isp/inventory/suppliers/<int:supplier_id>/delete")
    @tenant_access_required
    @module_required("billing")
    @role_required("admin", "operator")
    def delete_supplier(supplier_id: int):
        supplier = _tenant_record(Supplier, supplier_id)
        if PurchaseOrder.query.filter_by(supplier_id=supplier.id).first():
            raise ValidationError("The supplier has purchase orders. Deactivate it instead.")
        db.session.delete(supplier)
        _commit("delete supplier")
        return jsonify({"status": "deleted", "id": supplier_id})

    @app.post("/isp/inventory/suppliers/<int:supplier_id>/payments")
    @tenant_access_required
    @module_required("billing")
    def pay_supplier(supplier_id: int):
        supplier = _tenant_record(Supplier, supplier_id)
        data = _payload()
        order_id = _coerce_int(data.get("purchase_order_id"))
        order = _tenant_record(PurchaseOrder, order_id) if order_id else None
        payment = record_supplier_payment(
            supplier,
            parse_amount_cents(data.get("amount")),
            order=order,
            payment_method=_text(data, "payment_method") or "cash",
            reference=_text(data, "reference"),
            notes=_text(data, "notes"),
        )
        db.session.flush()
        log_activity(
            "supplier_paid",
            entity_type="supplier",
            entity_id=supplier.id,
            details={"amount_cents": payment.amount_cents},
        )
        _commit("record supplier payment")
        return jsonify({"payment": payment.to_dict(), "supplier": supplier.to_dict()}), 201

    @app.get("/isp/inventory/purchase-orders")
    @tenant_access_required
    @module_required("billing")
    def list_purchase_orders():
        page, page_size = page_args()
        query = PurchaseOrder.query.filter_by(tenant_id=g.tenant.id).order_by(
            PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc()
        )
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(PurchaseOrder.status == status)
        supplier_id = _coerce_int(request.args.get("supplier_id"))
        if supplier_id:
            query = query.filter(PurchaseOrder.supplier_id == supplier_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/inventory/purchase-orders")
    @tenant_access_required
    @module_required("billing")
    def create_purchase_order_route():
        data = _payload()
        supplier = _tenant_record(Supplier, _coerce_int(data.get("supplier_id")) or 0)
        order = create_purchase_order(
            g.tenant.id,
            supplier,
            data.get("items") or [],
            paid_cents=parse_amount_cents(data.get("paid_amount"), field="paid_amount", required=False),
            notes=_text(data, "notes"),
            order_date=parse_date(data.get("order_date")),
        )
        db.session.flush()
        log_activity(
            "purchase_order_created",
            entity_type="purchase_order",
            entity_id=order.id,
            details={"order_number": order.order_number, "total_cents": order.total_cents},
        )
        _commit("create purchase order")
        return jsonify(order.to_dict()), 201

    @app.post("/isp/inventory/purchase-orders/<int:order_id>/receive")
    @tenant_access_required
    @module_required("billing")
    def receive_purchase_order_route(order_id: int):
        order = receive_purchase_order(_tenant_record(PurchaseOrder, order_id), user=g.user)
        log_activity("purchase_order_received", entity_type="purchase_order", entity_id=order.id)
        _commit("receive purchase order")
        return jsonify(order.to_dict())

    # POS

    @app.get("/isp/pos/customers")
    @tenant_access_required
    @module_required("billing")
    def list_pos_customers():
        page, page_size = page_args()
        customers = POSCustomer.query.filter_by(tenant_id=g.tenant.id).order_by(POSCustomer.name.asc()).all()
        records = filter_records(
            [customer.to_dict() for customer in customers],
            request.args.get("search"),
            ("name", "customer_code", "phone", "company_name"),
        )
        if is_truthy(request.args.get("due_only")):
            records = [record for record in records if record["due_cents"] > 0]
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/pos/customers")
    @tenant_access_required
    @module_required("billing")
    def create_pos_customer():
        data = _payload()
        name = _text(data, "name")
        if not name:
            raise ValidationError("Customer name is required.")
        customer = POSCustomer(
            tenant_id=g.tenant.id,
            customer_code=generate_pos_customer_code(g.tenant.id),
            name=name,
            phone=normalize_phone_number(data.get("phone")) or None,
            email=_text(data, "email"),
            address=_text(data, "address"),
            company_name=_text(data, "company_name"),
            notes=_text(data, "notes"),
        )
        db.session.add(customer)
        _commit("create POS customer")
        return jsonify(customer.to_dict()), 201

    @app.get("/isp/pos/sales")
    @tenant_access_required
    @module_required("billing")
    def list_pos_sales():
        page, page_size = page_args()
        query = POSSale.query.filter_by(tenant_id=g.tenant.id).order_by(
            POSSale.sale_date.desc(), POSSale.id.desc()
        )
        status = request.args.get("status")
        if status and status != "all":
            query = query.filter(POSSale.status == status)
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(POSSale.customer_id == customer_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/pos/sales")
    @tenant_access_required
    @module_required("billing")
    def create_pos_sale():
        data = _payload()
        payment = data.get("payment") or {}
        customer_id = _coerce_int(data.get("customer_id"))
        customer = _tenant_record(POSCustomer, customer_id) if customer_id else None
        sale = record_pos_sale(
            g.tenant.id,
            data.get("cart") or [],
            customer=customer,
            customer_name=_text(data, "customer_name"),
            customer_phone=data.get("customer_phone"),
            paid_cents=parse_amount_cents(payment.get("paid"), field="paid", required=False),
            payment_method=str(payment.get("method") or "cash"),
            payment_reference=_text(payment, "reference"),
            discount_cents=parse_amount_cents(data.get("discount"), field="discount", required=False),
            tax_cents=parse_amount_cents(data.get("tax"), field="tax", required=False),
            notes=_text(data, "notes"),
            user=g.user,
        )
        db.session.flush()

        sms_result = None
        if is_truthy(data.get("send_sms")) and sale.customer_phone:
            receipt = (
                f"Thank you for your purchase. Invoice {sale.invoice_number}, "
                f"total {format_cents(sale.total_cents)}, paid {format_cents(sale.paid_cents)}, "
                f"due {format_cents(sale.due_cents)}."
            )
            sms_result = send_sms(g.tenant.id, sale.customer_phone, receipt)

        log_activity(
            "pos_sale",
            entity_type="pos_sale",
            entity_id=sale.id,
            details={"invoice_number": sale.invoice_number, "total_cents": sale.total_cents},
        )
        _commit("record POS sale")
        payload = sale.to_dict()
        if sms_result is not None:
            payload["sms"] = sms_result
        return jsonify(payload), 201

    @app.get("/isp/pos/sales/<int:sale_id>")
    @tenant_access_required
    @module_required("billing")
    def pos_sale_detail(sale_id: int):
        sale = _tenant_record(POSSale, sale_id)
        payload = sale.to_dict()
        payload["header"] = {
            "name": g.tenant.name,
            "address": g.tenant.address,
            "phone": format_phone_display(g.tenant.phone) if g.tenant.phone else None,
        }
        return jsonify(payload)

    @app.get("/isp/pos/payments")
    @tenant_access_required
    @module_required("billing")
    def list_pos_payments():
        page, page_size = page_args()
        query = POSPayment.query.filter_by(tenant_id=g.tenant.id).order_by(
            POSPayment.payment_date.desc(), POSPayment.id.desc()
        )
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(POSPayment.customer_id == customer_id)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/pos/payments")
    @tenant_access_required
    @module_required("billing")
    def collect_pos_payment():
        data = _payload()
        customer = _tenant_record(POSCustomer, _coerce_int(data.get("customer_id")) or 0)
        sale_id = _coerce_int(data.get("sale_id"))
        sale = _tenant_record(POSSale, sale_id) if sale_id else None
        payment = collect_pos_due(
            customer,
            parse_amount_cents(data.get("amount")),
            sale=sale,
            payment_method=_text(data, "payment_method") or "cash",
            reference=_text(data, "reference"),
            notes=_text(data, "notes"),
            user=g.user,
        )
        db.session.flush()
        log_activity(
            "pos_due_collected",
            entity_type="pos_customer",
            entity_id=customer.id,
            details={"amount_cents": payment.amount_cents},
        )
        _commit("collect POS due")
        return jsonify({"payment": payment.to_dict(), "customer": customer.to_dict()}), 201

    @app.get("/isp/pos/report")
    @tenant_access_required
    @module_required("billing")
    def pos_report():
        report = pos_monthly_report(g.tenant.id, request.args.get("month"))
        if request.args.get("format") == "csv":
            rows = [
                {
                    **row,
                    "total": format_cents(row["total_cents"]),
                    "paid": format_cents(row["paid_cents"]),
                    "due": format_cents(row["due_cents"]),
                }
                for row in report["rows"]
            ]
            content = rows_to_csv(["date", "type", "reference", "party", "total", "paid", "due"], rows)
            return csv_response(content, f"pos-report-{report['month']}.csv")
        return jsonify(report)

    # OLT / ONU monitoring

    def _apply_olt_fields(olt: OLT, data: dict) -> None:
        if "name" in data:
            name = _text(data, "name")
            if not name:
                raise ValidationError("OLT name is required.")
            olt.name = name
        if "brand" in data:
            olt.brand = _choice(data.get("brand"), OLT_BRANDS, "Other", "brand")
        if "ip_address" in data:
            ip_address = _text(data, "ip_address")
            if not ip_address:
                raise ValidationError("OLT IP address is required.")
            olt.ip_address = ip_address
        if "port" in data:
            port = _coerce_int(data.get("port"))
            if port is None or not 0 < port < 65536:
                raise ValidationError("Port must be between 1 and 65535.")
            olt.port = port
        for field in ("username", "location"):
            if field in data:
                setattr(olt, field, _text(data, field))
        if data.get("password"):
            olt.password = str(data["password"])
        if "total_ports" in data:
            olt.total_ports = max(1, _coerce_int(data.get("total_ports")) or 8)

    @app.get("/isp/olts")
    @tenant_access_required
    def list_olts():
        olts = OLT.query.filter_by(tenant_id=g.tenant.id).order_by(OLT.name.asc())
        return jsonify({"items": [olt.to_dict() for olt in olts]})

    @app.post("/isp/olts")
    @tenant_access_required
    @role_required("admin", "operator")
    def create_olt():
        limits = resolve_tenant_limits(g.tenant)
        current = OLT.query.filter_by(tenant_id=g.tenant.id).count()
        if not g.user.is_super_admin and current >= limits["max_olts"]:
            return (
                jsonify(
                    {
                        "error": f"OLT limit reached ({limits['max_olts']}). Upgrade your package to add more.",
                        "reason": "limit_reached",
                    }
                ),
                403,
            )
        data = _payload()
        if not _text(data, "name") or not _text(data, "ip_address"):
            raise ValidationError("OLT name and IP address are required.")
        olt = OLT(tenant_id=g.tenant.id, status="unknown")
        _apply_olt_fields(olt, data)
        db.session.add(olt)
        db.session.flush()
        log_activity("olt_created", entity_type="olt", entity_id=olt.id)
        _commit("create OLT")
        return jsonify(olt.to_dict()), 201

    @app.get("/isp/olts/<int:olt_id>")
    @tenant_access_required
    def olt_detail(olt_id: int):
        olt = _tenant_record(OLT, olt_id)
        payload = olt.to_dict()
        payload["onus"] = [onu.to_dict() for onu in olt.onus]
        return jsonify(payload)

    @app.post("/isp/olts/<int:olt_id>")
    @tenant_access_required
    @role_required("admin", "operator")
    def update_olt(olt_id: int):
        olt = _tenant_record(OLT, olt_id)
        _apply_olt_fields(olt, _payload())
        _commit("update OLT")
        return jsonify(olt.to_dict())

    @app.post("/isp/olts/<int:olt_id>/delete")
    @tenant_access_required
    @role_required("admin", "operator")
    def delete_olt(olt_id: int):
        olt = _tenant_record(OLT, olt_id)
        onu_ids = [onu.id for onu in olt.onus]
        if onu_ids:
            Customer.query.filter(Customer.onu_id.in_(onu_ids)).update(
                {"onu_id": None}, synchronize_session=False
            )
        Area.query.filter_by(olt_id=olt.id).update({"olt_id": None})
        db.session.delete(olt)
        log_activity("olt_deleted", entity_type="olt", entity_id=olt_id)
        _commit("delete OLT")
        return jsonify({"status": "deleted", "id": olt_id})

    @app.post("/isp/olts/<int:olt_id>/poll")
    @tenant_access_required
    def poll_olt(olt_id: int):
        olt = _tenant_record(OLT, olt_id)
        result = build_polling_client(g.tenant).poll_olt(olt.id)
        olt.last_polled = utcnow()
        _commit("record OLT poll")
        return jsonify({"olt": olt.to_dict(), "result": result})

    @app.post("/isp/olts/test-connection")
    @tenant_access_required
    def test_olt_connection():
        data = _payload()
        if not _text(data, "ip_address"):
            raise ValidationError("OLT IP address is required.")
        result = build_polling_client(g.tenant).test_connection(
            {
                "ip": _text(data, "ip_address"),
                "port": _coerce_int(data.get("port")) or 23,
                "username": _text(data, "username"),
                "password": data.get("password") or "",
                "brand": _text(data, "brand") or "Other",
            }
        )
        return jsonify(result)

    @app.post("/isp/olts/<int:olt_id>/onus/sync")
    @tenant_access_required
    def sync_olt_onus(olt_id: int):
        olt = _tenant_record(OLT, olt_id)
        data = request.get_json(silent=True)
        readings = data.get("onus") if isinstance(data, dict) else data
        if not isinstance(readings, list):
            raise ValidationError("Post a list of ONU readings.")
        result = sync_onu_readings(olt, readings)
        _commit("sync ONU readings")

        emailed = notify_critical_alerts(
            current_app._get_current_object(), g.tenant, result["alerts"]
        )
        return jsonify(
            {
                "created": result["created"],
                "updated": result["updated"],
                "skipped": result["skipped"],
                "alerts": [alert.to_dict() for alert in result["alerts"]],
                "emailed": emailed,
            }
        )

    @app.get("/isp/onus")
    @tenant_access_required
    def list_onus():
        page, page_size = page_args()
        onus = ONU.query.filter_by(tenant_id=g.tenant.id).order_by(
            ONU.olt_id.asc(), ONU.pon_port.asc(), ONU.onu_index.asc()
        ).all()
        records = filter_records(
            [onu.to_dict() for onu in onus],
            request.args.get("search"),
            ("name", "router_name", "mac_address", "serial_number", "pppoe_username"),
            {
                "olt_id": request.args.get("olt_id"),
                "status": request.args.get("status"),
                "power_level": request.args.get("power"),
            },
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/onus")
    @tenant_access_required
    def create_onu():
        data = _payload()
        olt = _tenant_record(OLT, _coerce_int(data.get("olt_id")) or 0)
        pon_port = _text(data, "pon_port")
        onu_index = _coerce_int(data.get("onu_index"))
        if not pon_port or onu_index is None:
            raise ValidationError("PON port and ONU index are required.")
        onu = ONU(
            tenant_id=g.tenant.id,
            olt=olt,
            pon_port=pon_port,
            onu_index=onu_index,
            name=_text(data, "name"),
            router_name=_text(data, "router_name"),
            mac_address=_text(data, "mac_address"),
            serial_number=_text(data, "serial_number"),
            pppoe_username=_text(data, "pppoe_username"),
            rx_power=_coerce_float(data.get("rx_power")),
            tx_power=_coerce_float(data.get("tx_power")),
            status=_choice(data.get("status"), DEVICE_STATUS_OPTIONS, "unknown", "status"),
        )
        db.session.add(onu)
        _commit("create ONU")
        return jsonify(onu.to_dict()), 201

    @app.get("/isp/alerts")
    @tenant_access_required
    def list_alerts():
        page, page_size = page_args()
        query = Alert.query.filter_by(tenant_id=g.tenant.id).order_by(
            Alert.created_at.desc(), Alert.id.desc()
        )
        if is_truthy(request.args.get("unread")):
            query = query.filter(Alert.is_read.is_(False))
        severity = request.args.get("severity")
        if severity:
            query = query.filter(Alert.severity == severity)
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.post("/isp/alerts/<int:alert_id>/read")
    @tenant_access_required
    def mark_alert_read(alert_id: int):
        alert = _tenant_record(Alert, alert_id)
        alert.is_read = True
        _commit("mark alert read")
        return jsonify(alert.to_dict())

    @app.post("/isp/alerts/read-all")
    @tenant_access_required
    def mark_all_alerts_read():
        updated = Alert.query.filter_by(tenant_id=g.tenant.id, is_read=False).update({"is_read": True})
        _commit("mark alerts read")
        return jsonify({"updated": updated})

    @app.get("/isp/monitoring/dashboard")
    @tenant_access_required
    def monitoring_dashboard():
        olts = OLT.query.filter_by(tenant_id=g.tenant.id).all()
        onus = ONU.query.filter_by(tenant_id=g.tenant.id).all()
        rx_values = [onu.rx_power for onu in onus if onu.rx_power is not None]
        unread_alerts = Alert.query.filter_by(tenant_id=g.tenant.id, is_read=False)
        recent_alerts = unread_alerts.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(10)
        return jsonify(
            {
                "olts": {
                    "total": len(olts),
                    "online": sum(1 for olt in olts if olt.status == "online"),
                    "offline": sum(1 for olt in olts if olt.status == "offline"),
                },
                "onus": {
                    "total": len(onus),
                    "online": sum(1 for onu in onus if onu.status == "online"),
                    "offline": sum(1 for onu in onus if onu.status == "offline"),
                    "poor_signal": sum(1 for onu in onus if onu.power_level == "poor"),
                },
                "average_rx_power": round(sum(rx_values) / len(rx_values), 2) if rx_values else None,
                "active_alerts": unread_alerts.count(),
                "recent_alerts": [alert.to_dict() for alert in recent_alerts],
            }
        )

    # MikroTik routers and PPPoE

    def _apply_router_fields(router: MikroTikRouter, data: dict) -> None:
        for field in ("name", "ip_address", "username"):
            if field in data:
                value = _text(data, field)
                if not value:
                    raise ValidationError(f"Router {field.replace('_', ' ')} is required.")
                setattr(router, field, value)
        if "port" in data:
            port = _coerce_int(data.get("port"))
            if port is None or not 0 < port < 65536:
                raise ValidationError("Port must be between 1 and 65535.")
            router.port = port
        if data.get("password"):
            router.password = str(data["password"])
        if "is_primary" in data:
            router.is_primary = is_truthy(data.get("is_primary"))

    def _ensure_single_primary(router: MikroTikRouter) -> None:
        if not router.is_primary:
            return
        for other in MikroTikRouter.query.filter(
            MikroTikRouter.tenant_id == router.tenant_id,
            MikroTikRouter.id != router.id,
            MikroTikRouter.is_primary.is_(True),
        ):
            other.is_primary = False

    @app.get("/isp/mikrotik")
    @tenant_access_required
    def list_routers():
        routers = MikroTikRouter.query.filter_by(tenant_id=g.tenant.id).order_by(
            MikroTikRouter.is_primary.desc(), MikroTikRouter.name.asc()
        )
        return jsonify({"items": [router.to_dict() for router in routers]})

    @app.post("/isp/mikrotik")
    @tenant_access_required
    @role_required("admin", "operator")
    def create_router():
        data = _payload()
        if not all(_text(data, field) for field in ("name", "ip_address", "username")):
            raise ValidationError("Router name, IP address and username are required.")
        router = MikroTikRouter(tenant_id=g.tenant.id, status="unknown")
        _apply_router_fields(router, data)
        if not MikroTikRouter.query.filter_by(tenant_id=g.tenant.id).first():
            router.is_primary = True
        db.session.add(router)
        db.session.flush()
        _ensure_single_primary(router)
        _commit("create MikroTik router")
        return jsonify(router.to_dict()), 201

    @app.post("/isp/mikrotik/<int:router_id>")
    @tenant_access_required
    @role_required("admin", "operator")
    def update_router(router_id: int):
        router = _tenant_record(MikroTikRouter, router_id)
        _apply_router_fields(router, _payload())
        _ensure_single_primary(router)
        _commit("update MikroTik router")
        return jsonify(router.to_dict())

    @app.post("/isp/mikrotik/<int:router_id>/delete")
    @tenant_access_required
    @role_required("admin", "operator")
    def delete_router(router_id: int):
        router = _tenant_record(MikroTikRouter, router_id)
        db.session.delete(router)
        _commit("delete MikroTik router")
        return jsonify({"status": "deleted", "id": router_id})

    @app.post("/isp/mikrotik/<int:router_id>/test")
    @tenant_access_required
    def test_router(router_id: int):
        router = _tenant_record(MikroTikRouter, router_id)
        try:
            result = build_polling_client(g.tenant).test_mikrotik(router)
        except PollingServerError:
            router.status = "offline"
            _commit("record MikroTik status")
            raise
        router.status = "online"
        router.last_synced = utcnow()
        _commit("record MikroTik status")
        return jsonify({"router": router.to_dict(), "result": result})

    @app.get("/isp/devices/health")
    @tenant_access_required
    def device_health():
        return jsonify(build_polling_client(g.tenant).device_health())

    @app.get("/isp/customers/<int:customer_id>/pppoe-status")
    @tenant_access_required
    def customer_pppoe_status(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        if not customer.pppoe_username:
            raise ValidationError("Customer has no PPPoE username.")
        router = get_primary_router(g.tenant.id)
        if router is None:
            raise PollingServerError("No MikroTik router is configured.")
        result = build_polling_client(g.tenant).pppoe_status(router, customer.pppoe_username)
        return jsonify({"customer_id": customer.id, "router_id": router.id, "status": result})

    @app.get("/isp/customers/<int:customer_id>/bandwidth")
    @tenant_access_required
    def customer_bandwidth(customer_id: int):
        customer = _tenant_record(Customer, customer_id)
        return jsonify(sample_bandwidth(g.tenant, customer))

    # Customer portal

    @app.post("/portal/login")
    def portal_login():
        data = _payload()
        identifier = _text(data, "username") or _text(data, "customer_code") or ""
        password = str(data.get("password") or "")
        tenant_id = _coerce_int(data.get("tenant_id"))
        if not identifier or not password:
            return jsonify({"error": "Customer ID and password are required."}), 400

        phone = normalize_phone_number(identifier)
        conditions = [Customer.customer_code == identifier, Customer.pppoe_username == identifier]
        if phone:
            conditions.append(Customer.phone == phone)
        query = Customer.query.filter(or_(*conditions))
        if tenant_id:
            query = query.filter(Customer.tenant_id == tenant_id)

        customer = next(
            (
                candidate
                for candidate in query.order_by(Customer.id.asc())
                if candidate.portal_password_hash
                and check_password_hash(candidate.portal_password_hash, password)
            ),
            None,
        )
        if customer is None:
            current_app.logger.warning("Failed portal login for %s", identifier)
            return jsonify({"error": "Invalid credentials."}), 401

        tenant = db.session.get(Tenant, customer.tenant_id)
        if tenant is None or tenant.status in {"suspended", "cancelled"}:
            return (
                jsonify(
                    {
                        "error": "This service provider account is unavailable.",
                        "reason": "suspended",
                    }
                ),
                403,
            )

        session[PORTAL_SESSION_KEY] = customer.id
        return jsonify({"customer": customer.to_dict()})

    @app.get("/portal/logout")
    def portal_logout():
        session.pop(PORTAL_SESSION_KEY, None)
        return jsonify({"status": "ok"})

    @app.get("/portal/dashboard")
    @customer_login_required
    def portal_dashboard(customer: Customer):
        last_payment = (
            CustomerPayment.query.filter_by(customer_id=customer.id)
            .order_by(CustomerPayment.payment_date.desc(), CustomerPayment.id.desc())
            .first()
        )
        return jsonify(
            {
                "customer_code": customer.customer_code,
                "name": customer.name,
                "package": customer.package.to_dict() if customer.package else None,
                "status": customer.status,
                "expiry_date": _iso(customer.expiry_date),
                "days_until_expiry": customer.days_until_expiry(),
                "due_amount_cents": customer.due_amount_cents,
                "last_payment": last_payment.to_dict() if last_payment else None,
                "isp": {
                    "name": g.tenant.name,
                    "phone": format_phone_display(g.tenant.phone) if g.tenant.phone else None,
                    "email": g.tenant.email,
                },
            }
        )

    @app.get("/portal/bills")
    @customer_login_required
    def portal_bills(customer: Customer):
        page, page_size = page_args()
        query = CustomerBill.query.filter_by(customer_id=customer.id).order_by(
            CustomerBill.bill_date.desc(), CustomerBill.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.get("/portal/payments")
    @customer_login_required
    def portal_payments(customer: Customer):
        page, page_size = page_args()
        query = CustomerPayment.query.filter_by(customer_id=customer.id).order_by(
            CustomerPayment.payment_date.desc(), CustomerPayment.id.desc()
        )
        return jsonify(
            _page_payload(paginate_query(query, page, page_size), lambda item: item.to_dict())
        )

    @app.get("/portal/tickets")
    @customer_login_required
    def portal_tickets(customer: Customer):
        tickets = SupportTicket.query.filter_by(customer_id=customer.id).order_by(
            SupportTicket.created_at.desc(), SupportTicket.id.desc()
        )
        return jsonify({"items": [ticket.to_dict(include_internal=False) for ticket in tickets]})

    @app.post("/portal/tickets")
    @customer_login_required
    def portal_create_ticket(customer: Customer):
        data = _payload()
        subject = _text(data, "subject")
        if not subject:
            raise ValidationError("Ticket subject is required.")
        category_id = _coerce_int(data.get("category_id"))
        category = db.session.get(TicketCategory, category_id) if category_id else None
        if category is not None and category.tenant_id != customer.tenant_id:
            category = None
        ticket = SupportTicket(
            tenant_id=customer.tenant_id,
            ticket_number=generate_ticket_number(customer.tenant_id),
            customer=customer,
            category=category,
            subject=subject,
            description=_text(data, "description"),
            priority=_choice(data.get("priority"), TICKET_PRIORITY_OPTIONS, "medium", "priority"),
            status="open",
            created_by_customer=True,
        )
        db.session.add(ticket)
        _commit("create portal ticket")
        return jsonify(ticket.to_dict(include_internal=False)), 201

    @app.post("/portal/tickets/<int:ticket_id>/comments")
    @customer_login_required
    def portal_ticket_comment(customer: Customer, ticket_id: int):
        ticket = db.session.get(SupportTicket, ticket_id)
        if ticket is None or ticket.customer_id != customer.id:
            abort(404)
        text_body = _text(_payload(), "comment")
        if not text_body:
            raise ValidationError("Comment text is required.")
        comment = TicketComment(
            comment=text_body,
            is_internal=False,
            author_name=customer.name,
            author_type="customer",
        )
        ticket.comments.append(comment)
        if ticket.status in {"resolved", "waiting"}:
            ticket.status = "open"
        _commit("add portal ticket comment")
        return jsonify(comment.to_dict()), 201

    @app.get("/portal/packages")
    @customer_login_required
    def portal_packages(customer: Customer):
        packages = ISPPackage.query.filter_by(tenant_id=customer.tenant_id, is_active=True).order_by(
            ISPPackage.sort_order.asc(), ISPPackage.price_cents.asc()
        )
        return jsonify(
            {
                "current_package_id": customer.package_id,
                "items": [package.to_dict() for package in packages],
            }
        )

    @app.post("/portal/profile")
    @customer_login_required
    def portal_update_profile(customer: Customer):
        data = _payload()
        if "phone" in data:
            phone = normalize_phone_number(data.get("phone"))
            if phone and not is_valid_bd_phone(phone):
                raise ValidationError("Enter a valid mobile number.")
            customer.phone = phone or None
        for field in ("email", "address"):
            if field in data:
                setattr(customer, field, _text(data, field))
        _commit("update portal profile")
        return jsonify(customer.to_dict())

    @app.get("/portal/bandwidth")
    @customer_login_required
    def portal_bandwidth(customer: Customer):
        return jsonify(sample_bandwidth(g.tenant, customer))

    # Reports and dashboard

    @app.get("/isp/reports/monthly")
    @tenant_access_required
    @module_required("billing")
    def monthly_report():
        report = isp_monthly_report(g.tenant.id, request.args.get("month"))
        if request.args.get("format") == "csv":
            summary_rows = [
                {"metric": key, "value": value}
                for key, value in report.items()
                if not isinstance(value, (list, dict))
            ]
            summary_rows.extend(
                {
                    "metric": f"collector:{entry['collector']}",
                    "value": format_cents(entry["amount_cents"]),
                }
                for entry in report["collectors"]
            )
            return csv_response(
                rows_to_csv(["metric", "value"], summary_rows),
                f"monthly-report-{report['month']}.csv",
            )
        return jsonify(report)

    @app.get("/isp/reports/collections")
    @tenant_access_required
    @module_required("billing")
    def collection_report():
        days = _coerce_int(request.args.get("days")) or 30
        days = max(1, min(days, 366))
        series = collection_series(g.tenant.id, days)
        return jsonify(
            {
                "days": days,
                "series": series,
                "total_cents": sum(point["amount_cents"] for point in series),
            }
        )

    @app.get("/isp/dashboard")
    @tenant_access_required
    def isp_dashboard():
        return jsonify(get_dashboard_stats(current_app._get_current_object(), g.tenant))

    # Tenant users

    @app.get("/isp/users")
    @tenant_access_required
    @role_required("admin")
    def list_users():
        page, page_size = page_args()
        users = User.query.filter_by(tenant_id=g.tenant.id).order_by(User.id.asc())
        records = filter_records(
            [user.to_dict() for user in users],
            request.args.get("search"),
            ("full_name", "email", "phone"),
            {"role": request.args.get("role")},
        )
        return jsonify(paginate_items(records, page, page_size))

    @app.post("/isp/users")
    @tenant_access_required
    @role_required("admin")
    def create_user():
        limits = resolve_tenant_limits(g.tenant)
        current = User.query.filter_by(tenant_id=g.tenant.id).count()
        if current >= limits["max_users"]:
            return (
                jsonify(
                    {
                        "error": f"User limit reached ({limits['max_users']}). Upgrade your package to add more.",
                        "reason": "limit_reached",
                    }
                ),
                403,
            )

        data = _payload()
        email = (_text(data, "email") or "").lower()
        password = str(data.get("password") or "")
        if not email or not password:
            raise ValidationError("Email and password are required.")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters.")
        if User.query.filter(db.func.lower(User.email) == email).first():
            raise ValidationError("A user with that email already exists.")
        role = _choice(data.get("role"), USER_ROLES, DEFAULT_USER_ROLE, "role")
        if role == "super_admin":
            raise ValidationError("Tenant users cannot be super admins.")

        user = User(
            tenant_id=g.tenant.id,
            email=email,
            full_name=_text(data, "full_name"),
            phone=normalize_phone_number(data.get("phone")) or None,
            role=role,
            is_owner=False,
            is_active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        log_activity("user_created", entity_type="user", entity_id=user.id, details={"role": role})
        _commit("create user")
        return jsonify(user.to_dict()), 201

    @app.post("/isp/users/<int:user_id>")
    @tenant_access_required
    @role_required("admin")
    def update_user(user_id: int):
        user = _tenant_record(User, user_id)
        data = _payload()
        if "role" in data:
            role = _choice(data.get("role"), USER_ROLES, user.role, "role")
            if role == "super_admin":
                raise ValidationError("Tenant users cannot be super admins.")
            if user.is_owner and role != "admin":
                raise ValidationError("The account owner must stay an admin.")
            user.role = role
        if "full_name" in data:
            user.full_name = _text(data, "full_name")
        if "phone" in data:
            user.phone = normalize_phone_number(data.get("phone")) or None
        if "is_active" in data:
            active = is_truthy(data.get("is_active"))
            if not active and (user.is_owner or user.id == g.user.id):
                raise ValidationError("You cannot deactivate that account.")
            user.is_active = active
        if data.get("password"):
            if len(str(data["password"])) < 6:
                raise ValidationError("Password must be at least 6 characters.")
            user.set_password(str(data["password"]))
        log_activity("user_updated", entity_type="user", entity_id=user.id)
        _commit("update user")
        return jsonify(user.to_dict())

    @app.post("/isp/users/<int:user_id>/delete")
    @tenant_access_required
    @role_required("admin")
    def delete_user(user_id: int):
        user = _tenant_record(User, user_id)
        if user.id == g.user.id:
            raise ValidationError("You cannot delete your own account.")
        if user.is_owner:
            raise ValidationError("The account owner cannot be deleted.")
        db.session.delete(user)
        log_activity("user_deleted", entity_type="user", entity_id=user_id)
        _commit("delete user")
        return jsonify({"status": "deleted", "id": user_id})


app = create_app()


if __name__ == "__main__":
    port = 5000
    port_env = os.environ.get("PORT")
    if port_env:
        try:
            port = int(port_env)
        except ValueError:
            app.logger.warning("Ignoring invalid PORT value: %s", port_env)

    host = os.environ.get("HOST", "0.0.0.0")
    app.logger.info("ISP Point API listening on %s:%s", host, port)
    app.run(host=host, port=port, threaded=True)
