from datetime import date, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import event as sa_event

import isp_point as app_module
from isp_point import (
    Alert,
    BandwidthWindow,
    Customer,
    CustomerBill,
    CustomerPayment,
    ISPPackage,
    InventoryItem,
    InventoryLedger,
    MikroTikRouter,
    OLT,
    PlatformInvoice,
    PlatformPackage,
    PlatformPayment,
    POSSale,
    SMSGatewaySettings,
    SMSLog,
    Subscription,
    Supplier,
    SupportTicket,
    TENANT_MODULES,
    Tenant,
    User,
    ValidationError,
    classify_power,
    collection_series,
    create_app,
    db,
    ensure_default_sms_templates,
    filter_records,
    format_phone_display,
    is_valid_bd_phone,
    month_bounds,
    normalize_phone_number,
    normalize_polling_server_url,
    paginate_items,
    parse_amount_cents,
    render_template_text,
    send_sms,
    start_subscription,
    summarize_http_error,
    utcnow,
)


class StripeStub:
    class Customer:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id="cus_test")

    class PaymentIntent:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            intent_id = f"pi_{len(cls.created)}"
            return SimpleNamespace(
                id=intent_id,
                client_secret=f"{intent_id}_secret",
                status="requires_payment_method",
                metadata=kwargs.get("metadata", {}),
            )

    class Event:
        next_event = None

        @classmethod
        def construct_from(cls, payload, api_key):
            return cls.next_event

    class Webhook:
        @staticmethod
        def construct_event(payload, sig_header, secret):
            raise NotImplementedError

    api_key = None

    @staticmethod
    def reset():
        StripeStub.Customer.created = []
        StripeStub.PaymentIntent.created = []
        StripeStub.Event.next_event = None


def install_stripe_stub(flask_app, monkeypatch, stub=None):
    stub = stub or StripeStub()
    stub.reset()
    monkeypatch.setattr(app_module, "stripe", stub, raising=False)
    monkeypatch.setattr(app_module, "StripeError", Exception, raising=False)
    monkeypatch.setattr(app_module, "SignatureVerificationError", Exception, raising=False)
    flask_app.config["STRIPE_SECRET_KEY"] = "sk_test"
    flask_app.config["STRIPE_PUBLISHABLE_KEY"] = "pk_test"
    return stub


class DummyResponse:
    def __init__(self, payload=None, status_code=200, text=None):
        self._payload = payload
        self.status_code = status_code
        self._text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    @property
    def text(self):
        if self._text is not None:
            return self._text
        return "" if self._payload is None else str(self._payload)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


SUPER_ADMIN_EMAIL = "root@isppoint.test"
SUPER_ADMIN_PASSWORD = "RootPass123!"
OWNER_PASSWORD = "OwnerPass123!"
FULL_FEATURES = {module: True for module in TENANT_MODULES}


@pytest.fixture
def app(tmp_path):
    test_db_path = tmp_path / "test.db"

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "SUPER_ADMIN_EMAIL": SUPER_ADMIN_EMAIL,
            "SUPER_ADMIN_PASSWORD": SUPER_ADMIN_PASSWORD,
            "POLLING_SERVER_URL": "http://poller.test/api/",
            "DASHBOARD_STATS_CACHE_SECONDS": 0,
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def create_tenant(
    app,
    *,
    email="owner@fiberlink.test",
    name="FiberLink",
    status="active",
    features=None,
    max_olts=3,
    max_users=3,
):
    with app.app_context():
        tenant = Tenant(
            name=name,
            email=email,
            status=status,
            features=dict(FULL_FEATURES if features is None else features),
            max_olts=max_olts,
            max_users=max_users,
        )
        db.session.add(tenant)
        db.session.flush()

        owner = User(
            tenant=tenant,
            email=email,
            full_name=f"{name} Owner",
            role="admin",
            is_owner=True,
        )
        owner.set_password(OWNER_PASSWORD)
        db.session.add(owner)
        ensure_default_sms_templates(tenant)
        db.session.commit()
        return tenant.id


def login(client, email="owner@fiberlink.test", password=OWNER_PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def create_package(client, name="Home 10", price="500"):
    response = client.post(
        "/isp/packages",
        json={"name": name, "download_speed": 10, "upload_speed": 10, "price": price},
    )
    assert response.status_code == 201
    return response.get_json()["id"]


def create_customer(client, **fields):
    payload = {"name": "Rahim Uddin", "phone": "01711111111"}
    payload.update(fields)
    response = client.post("/isp/customers", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def enable_sms_gateway(app, provider="smsnoc"):
    with app.app_context():
        settings = SMSGatewaySettings.query.first()
        settings.provider = provider
        settings.is_enabled = True
        settings.api_key = "gateway-key"
        db.session.commit()


# Helpers


def test_normalize_phone_number_variants():
    assert normalize_phone_number("01700000000") == "8801700000000"
    assert normalize_phone_number("+8801700000000") == "8801700000000"
    assert normalize_phone_number("1700000000") == "8801700000000"
    assert normalize_phone_number("017-0000 0000") == "8801700000000"
    assert normalize_phone_number("") == ""
    assert normalize_phone_number(None) == ""


def test_phone_display_and_validation():
    assert format_phone_display("8801712345678") == "01712345678"
    assert is_valid_bd_phone("01712345678")
    assert not is_valid_bd_phone("01212345678")
    assert not is_valid_bd_phone("12345")


def test_paginate_items_clamps_to_last_page():
    result = paginate_items(list(range(25)), page=5, page_size=10)
    assert result["page"] == 3
    assert result["pages"] == 3
    assert result["total"] == 25
    assert result["items"] == [20, 21, 22, 23, 24]

    empty = paginate_items([], page=2)
    assert empty["items"] == []
    assert empty["pages"] == 1
    assert empty["page"] == 1


def test_filter_records_searches_nested_fields_and_ignores_all():
    records = [
        {"name": "Rahim", "status": "active", "area": {"name": "Mirpur"}},
        {"name": "Karim", "status": "expired", "area": {"name": "Uttara"}},
        {"name": "Salma", "status": "active", "area": None},
    ]

    assert filter_records(records, "MIR", ("name", "area.name")) == [records[0]]
    assert len(filter_records(records, "", (), {"status": "all"})) == 3
    assert filter_records(records, None, (), {"status": "expired"}) == [records[1]]
    assert filter_records(records, "a", ("name",), {"status": "active"}) == [records[0], records[2]]


def test_summarize_http_error_rules():
    assert "timed out" in summarize_http_error(0, "Request timeout")
    assert summarize_http_error(0, "Network error: refused").startswith("Network error.")
    assert summarize_http_error(0, "") == "Failed to connect to polling server."
    assert summarize_http_error(0, "socket closed") == "socket closed"
    assert summarize_http_error(502, "") == "Request failed (HTTP 502)"
    assert "Nginx" in summarize_http_error(502, "<!DOCTYPE html><html>Bad gateway</html>")

    long_message = "x" * 200
    summary = summarize_http_error(500, long_message)
    assert summary == "x" * 180 + "…"


def test_normalize_polling_server_url():
    assert normalize_polling_server_url(" http://poller:3001/api/ ") == "http://poller:3001"
    assert normalize_polling_server_url("http://poller/API") == "http://poller"
    assert normalize_polling_server_url("http://poller//") == "http://poller"
    assert normalize_polling_server_url(None) == ""


def test_classify_power_levels():
    assert classify_power(-18.5) == "excellent"
    assert classify_power(-22) == "good"
    assert classify_power(-25.4) == "fair"
    assert classify_power(-28) == "poor"
    assert classify_power(None) == "n/a"
    assert classify_power(2.1, "tx") == "good"
    assert classify_power(6.0, "tx") == "fair"


def test_render_template_text_leaves_unknown_variables():
    text = "Dear {{customer_name}}, pay {{ amount }} by {{due_date}}"
    rendered = render_template_text(text, {"customer_name": "Rahim", "amount": "500.00"})
    assert rendered == "Dear Rahim, pay 500.00 by {{due_date}}"


def test_month_bounds_and_amount_parsing():
    assert month_bounds("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))
    assert month_bounds("2023-12") == (date(2023, 12, 1), date(2023, 12, 31))
    with pytest.raises(ValidationError):
        month_bounds("2024-13")

    assert parse_amount_cents("150.5") == 15050
    assert parse_amount_cents("", required=False) == 0
    with pytest.raises(ValidationError):
        parse_amount_cents(None)
    with pytest.raises(ValidationError):
        parse_amount_cents("-1")
    for raw in ("NaN", "sNaN", "Infinity", "abc"):
        with pytest.raises(ValidationError):
            parse_amount_cents(raw)


def test_bandwidth_window_keeps_latest_points():
    window = BandwidthWindow(3)
    for index in range(5):
        window.append("customer-1", {"index": index})
    window.append("customer-2", {"index": 99})

    assert [point["index"] for point in window.points("customer-1")] == [2, 3, 4]
    assert len(window.points("customer-2")) == 1

    window.clear("customer-1")
    assert window.points("customer-1") == []
    assert window.points("customer-2")


# Authentication and access guards


def test_register_creates_trial_tenant_with_default_templates(app, client):
    response = client.post(
        "/auth/register",
        json={
            "company_name": "Dhaka Fiber Net",
            "email": "owner@dhakafiber.test",
            "password": "secret123",
            "phone": "01811111111",
        },
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["tenant"]["status"] == "trial"
    assert payload["tenant"]["subdomain"] == "dhaka-fiber-net"
    assert payload["tenant"]["phone"] == "8801811111111"
    assert payload["user"]["is_owner"] is True

    me = client.get("/auth/me").get_json()
    assert me["access"]["allowed"] is True
    assert me["modules"]["olt_care"] is True
    assert me["modules"]["billing"] is False

    with app.app_context():
        tenant = Tenant.query.filter_by(email="owner@dhakafiber.test").one()
        templates = app_module.SMSTemplate.query.filter_by(tenant_id=tenant.id).all()
        assert {template.template_type for template in templates} == {
            "bill_reminder",
            "payment_received",
            "expiry_warning",
            "welcome",
        }

    duplicate = client.post(
        "/auth/register",
        json={"company_name": "Other", "email": "owner@dhakafiber.test", "password": "secret123"},
    )
    assert duplicate.status_code == 400


def test_login_rejects_bad_password(client, app):
    create_tenant(app)
    response = login(client, password="wrong")
    assert response.status_code == 401
    assert client.get("/isp/olts").status_code == 401


def test_tenant_access_reasons(app, client):
    tenant_id = create_tenant(app)
    login(client)
    assert client.get("/isp/olts").status_code == 200

    def set_tenant(**fields):
        with app.app_context():
            tenant = db.session.get(Tenant, tenant_id)
            for key, value in fields.items():
                setattr(tenant, key, value)
            db.session.commit()

    set_tenant(status="suspended", suspended_reason="Unpaid invoices")
    response = client.get("/isp/olts")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "suspended"
    assert "Unpaid invoices" in response.get_json()["error"]

    set_tenant(status="pending")
    assert client.get("/isp/olts").get_json()["reason"] == "payment_required"

    set_tenant(status="trial", trial_ends_at=utcnow() - timedelta(days=1))
    assert client.get("/isp/olts").get_json()["reason"] == "trial_expired"

    set_tenant(status="cancelled")
    assert client.get("/isp/olts").get_json()["reason"] == "cancelled"

    with app.app_context():
        tenant = db.session.get(Tenant, tenant_id)
        tenant.status = "active"
        package = PlatformPackage.query.filter_by(name="Professional").one()
        subscription, _invoice = start_subscription(
            tenant, package, "monthly", starts_at=utcnow() - timedelta(days=40)
        )
        db.session.commit()
        assert subscription.status == "active"

    response = client.get("/isp/olts")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "subscription_expired"


def test_module_guard_blocks_disabled_features(app, client):
    create_tenant(app, features={"olt_care": True})
    login(client)

    response = client.get("/isp/customers")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "module_disabled"
    assert client.get("/isp/sms/templates").get_json()["module"] == "sms_alerts"
    assert client.get("/isp/olts").status_code == 200


def test_super_admin_selects_tenant_with_header(app, client):
    tenant_id = create_tenant(app)
    login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)

    assert client.get("/isp/olts").status_code == 400
    response = client.get("/isp/customers", headers={"X-Tenant-Id": str(tenant_id)})
    assert response.status_code == 200

    tenants = client.get("/admin/tenants").get_json()
    assert tenants["total"] == 1


def test_tenant_user_cannot_reach_admin_routes(app, client):
    create_tenant(app)
    login(client)
    response = client.get("/admin/tenants")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "forbidden"


def test_viewer_role_cannot_delete_customers(app, client):
    tenant_id = create_tenant(app)
    with app.app_context():
        viewer = User(tenant_id=tenant_id, email="viewer@fiberlink.test", role="viewer")
        viewer.set_password("viewer123")
        db.session.add(viewer)
        db.session.commit()

    login(client)
    customer = create_customer(client)
    client.get("/auth/logout")

    login(client, "viewer@fiberlink.test", "viewer123")
    response = client.post(f"/isp/customers/{customer['id']}/delete")
    assert response.status_code == 403


# Super admin


def test_super_admin_suspends_and_deletes_tenant(app, client):
    tenant_id = create_tenant(app)
    login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)

    response = client.post(f"/admin/tenants/{tenant_id}/suspend", json={"reason": "Fraud check"})
    assert response.status_code == 200
    assert response.get_json()["status"] == "suspended"
    assert response.get_json()["suspended_reason"] == "Fraud check"

    response = client.post(f"/admin/tenants/{tenant_id}/activate")
    assert response.get_json()["status"] == "active"

    response = client.post(f"/admin/tenants/{tenant_id}/delete")
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Tenant, tenant_id) is None
        assert User.query.filter_by(tenant_id=tenant_id).count() == 0


def enforce_sqlite_foreign_keys(app):
    def _enable(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    with app.app_context():
        sa_event.listen(db.engine, "connect", _enable)
        db.engine.dispose()


def test_delete_tenant_with_area_linked_to_olt(app, client):
    tenant_id = create_tenant(app)
    enforce_sqlite_foreign_keys(app)
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()
    area = client.post("/isp/areas", json={"name": "Mirpur", "olt_id": olt["id"]})
    assert area.status_code == 201
    assert area.get_json()["olt_id"] == olt["id"]
    client.post(
        f"/isp/olts/{olt['id']}/onus/sync",
        json=[{"pon_port": "0/1", "onu_index": 1, "status": "online", "rx_power": -19}],
    )
    client.get("/auth/logout")

    login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    response = client.post(f"/admin/tenants/{tenant_id}/delete")
    assert response.status_code == 200

    with app.app_context():
        assert db.session.get(Tenant, tenant_id) is None
        assert OLT.query.count() == 0
        assert app_module.Area.query.count() == 0
        assert app_module.ONU.query.count() == 0


def test_manual_platform_payment_verified_by_super_admin(app, client):
    tenant_id = create_tenant(app, status="trial")
    with app.app_context():
        tenant = db.session.get(Tenant, tenant_id)
        package = PlatformPackage.query.filter_by(name="Professional").one()
        subscription, invoice = start_subscription(tenant, package, "monthly", activate=False)
        db.session.commit()
        subscription_id = subscription.id
        assert invoice.total_cents == 249900

    login(client)
    response = client.post("/billing/pay", json={"payment_method": "bkash"})
    assert response.status_code == 400

    response = client.post(
        "/billing/pay", json={"payment_method": "bkash", "transaction_id": "TRX123"}
    )
    assert response.status_code == 201
    payment_id = response.get_json()["payment"]["id"]
    client.get("/auth/logout")

    login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    response = client.post(f"/admin/payments/{payment_id}/verify")
    assert response.status_code == 200
    assert response.get_json()["status"] == "completed"

    with app.app_context():
        subscription = db.session.get(Subscription, subscription_id)
        assert subscription.status == "active"
        assert db.session.get(Tenant, tenant_id).status == "active"
        invoice = PlatformInvoice.query.filter_by(subscription_id=subscription_id).one()
        assert invoice.status == "paid"

    again = client.post(f"/admin/payments/{payment_id}/verify")
    assert again.status_code == 400


def test_admin_subscription_invoice_belongs_to_tenant(app, client):
    tenant_id = create_tenant(app, status="trial")
    with app.app_context():
        package_id = PlatformPackage.query.filter_by(name="Professional").one().id

    login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    response = client.post(
        "/admin/subscriptions",
        json={"tenant_id": tenant_id, "package_id": package_id, "billing_cycle": "monthly"},
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["invoice"]["tenant_id"] == tenant_id
    assert body["subscription"]["tenant_id"] == tenant_id

    with app.app_context():
        invoice = PlatformInvoice.query.filter_by(tenant_id=tenant_id).one()
        assert invoice.total_cents == 249900


def test_stripe_payment_intent_and_webhook_activate_subscription(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    tenant_id = create_tenant(app, status="trial")
    with app.app_context():
        tenant = db.session.get(Tenant, tenant_id)
        package = PlatformPackage.query.filter_by(name="Starter").one()
        subscription, _invoice = start_subscription(tenant, package, "monthly", activate=False)
        db.session.commit()
        subscription_id = subscription.id

    login(client)
    response = client.post("/billing/pay", json={"payment_method": "stripe"})
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["client_secret"] == "pi_1_secret"
    assert stub.PaymentIntent.created[0]["amount"] == 99900
    assert stub.PaymentIntent.created[0]["customer"] == "cus_test"

    stub.Event.next_event = SimpleNamespace(
        type="payment_intent.succeeded",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="pi_1",
                metadata={"platform_payment_id": str(payload["payment"]["id"])},
            )
        ),
    )
    response = client.post(
        "/stripe/webhook", data="{}", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"

    with app.app_context():
        payment = db.session.get(PlatformPayment, payload["payment"]["id"])
        assert payment.status == "completed"
        assert payment.invoice.status == "paid"
        assert db.session.get(Subscription, subscription_id).status == "active"
        assert db.session.get(Tenant, tenant_id).status == "active"
        assert db.session.get(Tenant, tenant_id).stripe_customer_id == "cus_test"


def test_stripe_webhook_ignores_unknown_intent(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    stub.Event.next_event = SimpleNamespace(
        type="payment_intent.succeeded",
        data=SimpleNamespace(object=SimpleNamespace(id="pi_unknown", metadata={})),
    )
    response = client.post("/stripe/webhook", data="{}")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ignored"


# Customers and billing


def test_customer_create_search_and_recharge(app, client):
    create_tenant(app)
    login(client)
    package_id = create_package(client)

    customer = create_customer(client, package_id=package_id, pppoe_username="rahim01")
    assert customer["customer_code"] == "C00001"
    assert customer["phone"] == "8801711111111"
    assert customer["monthly_bill_cents"] == 50000
    create_customer(client, name="Karim", phone="01822222222")

    listing = client.get("/isp/customers?search=0171").get_json()
    assert listing["total"] == 1
    assert listing["items"][0]["name"] == "Rahim Uddin"

    response = client.post(f"/isp/customers/{customer['id']}/recharge", json={"months": 2})
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["recharge"]["amount_cents"] == 100000
    assert payload["customer"]["expiry_date"] == (date.today() + timedelta(days=60)).isoformat()
    assert payload["customer"]["status"] == "active"
    assert payload["customer"]["due_amount_cents"] == 0

    profile = client.get(f"/isp/customers/{customer['id']}").get_json()
    assert profile["days_until_expiry"] == 60
    assert profile["payments"][0]["collected_by_name"] == "FiberLink Owner"


def test_customer_bulk_actions_and_package_delete_guard(app, client):
    create_tenant(app)
    login(client)
    package_id = create_package(client)
    first = create_customer(client)
    second = create_customer(client, name="Karim", phone="01822222222")

    response = client.post(
        "/isp/customers/bulk",
        json={"action": "assign_package", "ids": [first["id"], second["id"]], "package_id": package_id},
    )
    assert response.get_json()["affected"] == 2

    response = client.post(
        "/isp/customers/bulk",
        json={"action": "status", "ids": [first["id"]], "status": "suspended"},
    )
    assert response.status_code == 200
    suspended = client.get("/isp/customers?status=suspended").get_json()
    assert [item["id"] for item in suspended["items"]] == [first["id"]]

    assert client.post(f"/isp/packages/{package_id}/delete").status_code == 400
    assert client.post("/isp/customers/bulk", json={"action": "explode", "ids": [1]}).status_code == 400


def test_bill_generation_payment_and_monthly_report(app, client):
    create_tenant(app)
    login(client)
    first = create_customer(client, monthly_bill="500")
    second = create_customer(client, name="Karim", phone="01822222222", monthly_bill="700")
    create_customer(client, name="Inactive", phone="01933333333", monthly_bill="300", status="suspended")

    month = f"{date.today():%Y-%m}"
    response = client.post("/isp/bills/generate", json={"billing_month": month})
    assert response.status_code == 201
    assert response.get_json()["count"] == 2
    assert response.get_json()["total_cents"] == 120000

    again = client.post("/isp/bills/generate", json={"billing_month": month})
    assert again.get_json()["count"] == 0

    bills = client.get(f"/isp/bills?month={month}").get_json()["items"]
    bill_by_customer = {bill["customer_id"]: bill for bill in bills}
    first_bill = bill_by_customer[first["id"]]
    assert first_bill["bill_number"].startswith(f"INV{month.replace('-', '')}")

    response = client.post(f"/isp/bills/{first_bill['id']}/pay", json={"amount": "200"})
    assert response.status_code == 200
    assert response.get_json()["bill"]["status"] == "partial"

    response = client.post(f"/isp/bills/{first_bill['id']}/pay", json={})
    assert response.get_json()["bill"]["status"] == "paid"
    assert client.post(f"/isp/bills/{first_bill['id']}/pay", json={"amount": "1"}).status_code == 400

    with app.app_context():
        assert db.session.get(Customer, first["id"]).due_amount_cents == 0
        assert db.session.get(Customer, second["id"]).due_amount_cents == 70000

    report = client.get(f"/isp/reports/monthly?month={month}").get_json()
    assert report["total_customers"] == 3
    assert report["active_customers"] == 2
    assert report["disabled_customers"] == 1
    assert report["paid_bills"] == 1
    assert report["unpaid_bills"] == 1
    assert report["monthly_collection_cents"] == 50000
    assert report["monthly_due_cents"] == 70000
    assert report["collectors"] == [
        {"collector": "FiberLink Owner", "amount_cents": 50000, "count": 2}
    ]
    assert report["non_generated_bill_customers"] == []

    csv_response = client.get(f"/isp/reports/monthly?month={month}&format=csv")
    assert csv_response.mimetype == "text/csv"
    assert b"monthly_collection_cents,50000" in csv_response.data


def test_bill_payment_rejects_zero_and_non_finite_amounts(app, client):
    create_tenant(app)
    login(client)
    customer = create_customer(client, monthly_bill="500")
    month = f"{date.today():%Y-%m}"
    client.post("/isp/bills/generate", json={"billing_month": month})
    bill = client.get(f"/isp/bills?month={month}").get_json()["items"][0]

    for amount in ("0", "NaN", "Infinity"):
        response = client.post(f"/isp/bills/{bill['id']}/pay", json={"amount": amount})
        assert response.status_code == 400
        assert "error" in response.get_json()

    recharge = client.post(f"/isp/customers/{customer['id']}/recharge", json={"amount": "NaN"})
    assert recharge.status_code == 400

    with app.app_context():
        stored = db.session.get(CustomerBill, bill["id"])
        assert stored.status == "unpaid"
        assert stored.paid_amount_cents == 0
        assert CustomerPayment.query.count() == 0
        assert db.session.get(Customer, customer["id"]).due_amount_cents == 50000

    response = client.post(f"/isp/bills/{bill['id']}/pay", json={"amount": ""})
    assert response.status_code == 200
    assert response.get_json()["payment"]["amount_cents"] == 50000


def test_cancel_bill_reduces_customer_due(app, client):
    create_tenant(app)
    login(client)
    customer = create_customer(client, monthly_bill="500")
    client.post("/isp/bills/generate", json={"billing_month": "2024-05"})

    with app.app_context():
        bill = CustomerBill.query.filter_by(customer_id=customer["id"]).one()
        bill_id = bill.id

    response = client.post(f"/isp/bills/{bill_id}/cancel")
    assert response.get_json()["status"] == "cancelled"
    with app.app_context():
        assert db.session.get(Customer, customer["id"]).due_amount_cents == 0

    printable = client.get(f"/isp/bills/{bill_id}/print").get_json()
    assert printable["header"]["name"] == "FiberLink"
    assert printable["totals"]["total"] == "500.00"


def test_monthly_report_lists_customers_without_bills(app, client):
    create_tenant(app)
    login(client)
    customer = create_customer(client, monthly_bill="500")

    report = client.get("/isp/reports/monthly?month=2024-01").get_json()
    assert [entry["id"] for entry in report["non_generated_bill_customers"]] == [customer["id"]]


def test_collection_series_zero_fills_missing_days(app, client):
    tenant_id = create_tenant(app)
    login(client)
    customer = create_customer(client, monthly_bill="500")
    client.post(f"/isp/customers/{customer['id']}/recharge", json={"months": 1, "amount": "450"})

    with app.app_context():
        series = collection_series(tenant_id, days=7)
    assert len(series) == 7
    assert series[-1] == {"date": date.today().isoformat(), "amount_cents": 45000, "count": 1}
    assert all(point["amount_cents"] == 0 for point in series[:-1])

    response = client.get("/isp/reports/collections?days=3").get_json()
    assert len(response["series"]) == 3
    assert response["total_cents"] == 45000


def test_multi_collection_recharges_each_customer(app, client):
    create_tenant(app)
    login(client)
    package_id = create_package(client, price="400")
    first = create_customer(client, package_id=package_id)
    second = create_customer(client, name="Karim", phone="01822222222", package_id=package_id)

    response = client.post(
        "/isp/collections",
        json={
            "payment_method": "bkash",
            "items": [
                {"customer_id": first["id"], "months": 1},
                {"customer_id": second["id"], "months": 3},
            ],
        },
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["customer_count"] == 2
    assert payload["total_amount_cents"] == 160000

    with app.app_context():
        assert CustomerPayment.query.count() == 2
        assert db.session.get(Customer, second["id"]).expiry_date == date.today() + timedelta(days=90)


def test_import_and_export_customers_csv(app, client):
    create_tenant(app)
    login(client)
    create_package(client, name="Home 10", price="500")

    csv_text = (
        "Name,Phone,Package,PPPoE_Username\n"
        "Rahim,01711111111,Home 10,rahim01\n"
        "Duplicate,01711111111,,\n"
        ",01900000000,,\n"
    )
    response = client.post("/isp/customers/import", json={"csv": csv_text})
    assert response.status_code == 200
    result = response.get_json()
    assert result["created"] == 1
    assert result["skipped"] == 2
    assert len(result["errors"]) == 2

    bad = client.post("/isp/customers/import", json={"csv": "phone\n0171\n"})
    assert bad.status_code == 400

    export = client.get("/isp/customers/export")
    assert export.mimetype == "text/csv"
    lines = export.data.decode("utf-8").strip().splitlines()
    assert lines[0].startswith("customer_code,name,phone")
    assert "C00001,Rahim,8801711111111" in lines[1]
    assert "500.00" in lines[1]


def test_dashboard_stats_cache_invalidated_by_customer_insert(app, client):
    create_tenant(app)
    login(client)
    app.config["DASHBOARD_STATS_CACHE_SECONDS"] = 300

    stats = client.get("/isp/dashboard").get_json()
    assert stats["customers"]["total"] == 0

    create_customer(client)
    stats = client.get("/isp/dashboard").get_json()
    assert stats["customers"]["total"] == 1
    assert stats["customers"]["active"] == 1


# Resellers


def test_reseller_recharge_uses_balance_and_earns_commission(app, client):
    create_tenant(app)
    login(client)
    package_id = create_package(client, price="500")

    response = client.post(
        "/isp/resellers",
        json={
            "name": "Mirpur Reseller",
            "username": "mirpur",
            "password": "resell123",
            "commission_type": "percentage",
            "commission_value": "10",
        },
    )
    assert response.status_code == 201
    reseller_id = response.get_json()["id"]
    assert response.get_json()["code"] == "R0001"

    response = client.post(f"/isp/resellers/{reseller_id}/balance", json={"type": "recharge", "amount": "1000"})
    assert response.get_json()["reseller"]["balance_cents"] == 100000

    assert client.post("/reseller/login", json={"username": "mirpur", "password": "nope"}).status_code == 401
    assert client.post("/reseller/login", json={"username": "mirpur", "password": "resell123"}).status_code == 200

    response = client.post(
        "/reseller/customers",
        json={"name": "Reseller Client", "phone": "01911111111", "package_id": package_id},
    )
    assert response.status_code == 201
    customer_id = response.get_json()["id"]
    assert response.get_json()["reseller_id"] == reseller_id

    response = client.post(f"/reseller/customers/{customer_id}/recharge", json={"months": 1})
    assert response.status_code == 201
    assert response.get_json()["balance_cents"] == 55000
    assert response.get_json()["customer"]["expiry_date"] == (date.today() + timedelta(days=30)).isoformat()

    too_much = client.post(f"/reseller/customers/{customer_id}/recharge", json={"months": 3})
    assert too_much.status_code == 400

    with app.app_context():
        payment = CustomerPayment.query.filter_by(customer_id=customer_id).one()
        assert payment.collected_by_type == "reseller"
        assert payment.collected_by_name == "Mirpur Reseller"

    transactions = client.get("/reseller/transactions").get_json()
    assert [item["type"] for item in transactions["items"]][:2] == ["commission", "customer_payment"]

    dashboard = client.get("/reseller/dashboard").get_json()
    assert dashboard["customers"]["total"] == 1


def test_reseller_customer_limit(app, client):
    create_tenant(app)
    login(client)
    response = client.post(
        "/isp/resellers",
        json={"name": "Small Reseller", "username": "small", "password": "resell123", "max_customers": 1},
    )
    assert response.status_code == 201

    client.post("/reseller/login", json={"username": "small", "password": "resell123"})
    assert client.post("/reseller/customers", json={"name": "First"}).status_code == 201
    response = client.post("/reseller/customers", json={"name": "Second"})
    assert response.status_code == 403
    assert response.get_json()["reason"] == "limit_reached"


# POS and inventory


def test_purchase_order_receive_and_supplier_payment(app, client):
    create_tenant(app)
    login(client)
    item = client.post(
        "/isp/inventory/items",
        json={"name": "ZTE ONU", "sku": "ONU-F660", "unit_price": "100", "sale_price": "150"},
    ).get_json()
    supplier = client.post(
        "/isp/inventory/suppliers", json={"name": "Fiber Depot", "phone": "01555555555"}
    ).get_json()

    response = client.post(
        "/isp/inventory/purchase-orders",
        json={
            "supplier_id": supplier["id"],
            "items": [{"item_id": item["id"], "quantity": 10, "unit_price": "100"}],
            "paid_amount": "400",
        },
    )
    assert response.status_code == 201
    order = response.get_json()
    assert order["total_cents"] == 100000
    assert order["order_number"] == f"PO{date.today():%y}00001"

    with app.app_context():
        assert db.session.get(Supplier, supplier["id"]).due_cents == 60000

    received = client.post(f"/isp/inventory/purchase-orders/{order['id']}/receive")
    assert received.get_json()["status"] == "received"
    assert client.post(f"/isp/inventory/purchase-orders/{order['id']}/receive").status_code == 400

    with app.app_context():
        assert db.session.get(InventoryItem, item["id"]).quantity == 10
        ledger = InventoryLedger.query.filter_by(item_id=item["id"], transaction_type="purchase").one()
        assert (ledger.stock_before, ledger.stock_after) == (0, 10)

    response = client.post(
        f"/isp/inventory/suppliers/{supplier['id']}/payments",
        json={"amount": "600", "purchase_order_id": order["id"]},
    )
    assert response.status_code == 201
    assert response.get_json()["supplier"]["due_cents"] == 0

    order_list = client.get("/isp/inventory/purchase-orders").get_json()
    assert order_list["items"][0]["paid_amount_cents"] == 100000

    overpay = client.post(
        f"/isp/inventory/suppliers/{supplier['id']}/payments",
        json={"amount": "1", "purchase_order_id": order["id"]},
    )
    assert overpay.status_code == 400


def test_pos_sale_clamps_stock_and_collects_due(app, client):
    create_tenant(app)
    login(client)
    item = client.post(
        "/isp/inventory/items",
        json={"name": "Patch Cord", "quantity": 3, "min_quantity": 1, "unit_price": "100", "sale_price": "150"},
    ).get_json()
    pos_customer = client.post(
        "/isp/pos/customers", json={"name": "Walk Shop", "phone": "01612345678"}
    ).get_json()
    assert pos_customer["customer_code"] == "POS00001"

    response = client.post(
        "/isp/pos/sales",
        json={
            "customer_id": pos_customer["id"],
            "cart": [{"item_id": item["id"], "quantity": 5}],
            "payment": {"paid": "500", "method": "cash"},
        },
    )
    assert response.status_code == 201
    sale = response.get_json()
    assert sale["subtotal_cents"] == 75000
    assert sale["total_cents"] == 75000
    assert sale["due_cents"] == 25000
    assert sale["status"] == "partial"

    with app.app_context():
        assert db.session.get(InventoryItem, item["id"]).quantity == 0

    customers = client.get("/isp/pos/customers?due_only=1").get_json()
    assert customers["items"][0]["due_cents"] == 25000
    assert customers["items"][0]["total_purchase_cents"] == 75000

    response = client.post(
        "/isp/pos/payments",
        json={"customer_id": pos_customer["id"], "sale_id": sale["id"], "amount": "250"},
    )
    assert response.status_code == 201
    assert response.get_json()["customer"]["due_cents"] == 0
    with app.app_context():
        stored = db.session.get(POSSale, sale["id"])
        assert stored.status == "completed"
        assert stored.due_cents == 0

    summary = client.get("/isp/inventory/summary").get_json()
    assert summary["low_stock_count"] == 1
    assert client.get("/isp/inventory/items?low_stock=1").get_json()["total"] == 1


def test_walk_in_sale_and_validation(app, client):
    create_tenant(app)
    login(client)

    assert client.post("/isp/pos/sales", json={"cart": []}).status_code == 400

    response = client.post(
        "/isp/pos/sales",
        json={
            "cart": [{"name": "Installation", "quantity": 1, "unit_price": "1000"}],
            "discount": "100",
            "tax": "50",
            "payment": {"paid": "950"},
        },
    )
    sale = response.get_json()
    assert sale["customer_name"] == "Walk-in Customer"
    assert sale["total_cents"] == 95000
    assert sale["status"] == "completed"

    report = client.get(f"/isp/pos/report?month={date.today():%Y-%m}&format=csv")
    assert report.mimetype == "text/csv"
    text = report.data.decode("utf-8")
    assert text.splitlines()[0] == "date,type,reference,party,total,paid,due"
    assert sale["invoice_number"] in text


# SMS


def test_send_sms_logs_failure_when_gateway_disabled(app):
    tenant_id = create_tenant(app)
    with app.app_context():
        result = send_sms(tenant_id, "01711111111", "Hello")
        db.session.commit()
        assert result == {"success": False, "error": "SMS gateway not configured or disabled"}
        log = SMSLog.query.one()
        assert log.status == "failed"
        assert log.phone_number == "8801711111111"

        with pytest.raises(ValidationError):
            send_sms(tenant_id, "", "Hello")


def test_sms_campaign_dedupes_recipients(app, client, monkeypatch):
    tenant_id = create_tenant(app)
    enable_sms_gateway(app)
    with app.app_context():
        db.session.add_all(
            [
                Customer(tenant_id=tenant_id, customer_code="C00001", name="Rahim", phone="8801711111111"),
                Customer(tenant_id=tenant_id, customer_code="C00002", name="Rahim Twin", phone="01711111111"),
                Customer(tenant_id=tenant_id, customer_code="C00003", name="Karim", phone="8801812345678"),
                Customer(tenant_id=tenant_id, customer_code="C00004", name="No Phone", phone="12345"),
            ]
        )
        db.session.commit()

    sent: list[dict] = []

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.append({"url": url, "headers": headers, "json": json})
        return DummyResponse({"status": "success", "message": "queued"})

    monkeypatch.setattr(app_module.requests, "post", fake_post)

    login(client)
    response = client.post(
        "/isp/sms/campaigns",
        json={"name": "Eid notice", "message": "Hello {{customer_name}}", "target": "all"},
    )
    assert response.status_code == 201
    campaign = response.get_json()
    assert campaign["total_recipients"] == 2
    assert campaign["sent_count"] == 2
    assert campaign["failed_count"] == 0
    assert campaign["status"] == "completed"

    assert [entry["json"]["message"] for entry in sent] == ["Hello Rahim", "Hello Karim"]
    assert sent[0]["headers"]["Authorization"] == "Bearer gateway-key"

    logs = client.get("/isp/sms/logs?status=sent").get_json()
    assert logs["total"] == 2


def test_mimsms_failure_is_logged(app, client, monkeypatch):
    create_tenant(app)
    enable_sms_gateway(app, provider="mimsms")

    def fake_get(url, params=None, timeout=None):
        return DummyResponse(None, text="Invalid API key")

    monkeypatch.setattr(app_module.requests, "get", fake_get)

    login(client)
    response = client.post("/isp/sms/send", json={"phone": "01711111111", "message": "Ping"})
    assert response.status_code == 502
    assert response.get_json() == {"success": False, "error": "Invalid API key"}

    with app.app_context():
        log = SMSLog.query.one()
        assert log.status == "failed"
        assert log.error_message == "Invalid API key"


def test_due_reminders_use_bill_reminder_template(app, client, monkeypatch):
    tenant_id = create_tenant(app)
    enable_sms_gateway(app, provider="sslwireless")
    with app.app_context():
        db.session.add_all(
            [
                Customer(
                    tenant_id=tenant_id,
                    customer_code="C00001",
                    name="Rahim",
                    phone="01711111111",
                    due_amount_cents=50000,
                ),
                Customer(tenant_id=tenant_id, customer_code="C00002", name="Paid Up", phone="01822222222"),
            ]
        )
        db.session.commit()

    messages: list[str] = []

    def fake_post(url, json=None, timeout=None, **kwargs):
        messages.append(json["sms"])
        return DummyResponse({"status": "SUCCESS"})

    monkeypatch.setattr(app_module.requests, "post", fake_post)

    login(client)
    response = client.post("/isp/sms/due-reminders")
    assert response.get_json() == {"sent": 1, "failed": 0}
    assert messages[0].startswith("Dear Rahim, your bill of 500.00 BDT")


def test_system_sms_templates_cannot_be_deleted(app, client):
    create_tenant(app)
    login(client)
    templates = client.get("/isp/sms/templates").get_json()["items"]
    system_template = next(item for item in templates if item["is_system"])
    assert client.post(f"/isp/sms/templates/{system_template['id']}/delete").status_code == 400

    response = client.post(
        "/isp/sms/templates", json={"name": "Outage", "message": "Hi {{customer_name}}, outage in {{area}}"}
    )
    assert response.status_code == 201
    assert response.get_json()["variables"] == ["area", "customer_name"]
    assert client.post(f"/isp/sms/templates/{response.get_json()['id']}/delete").status_code == 200


# Support tickets and portal


def test_ticket_lifecycle_and_portal_visibility(app, client):
    create_tenant(app)
    login(client)
    customer = create_customer(client)
    client.post(f"/isp/customers/{customer['id']}/portal-password", json={"password": "portal123"})

    response = client.post(
        "/isp/tickets",
        json={"subject": "No internet", "customer_id": customer["id"], "priority": "high"},
    )
    assert response.status_code == 201
    ticket = response.get_json()
    assert ticket["ticket_number"] == f"TKT{date.today():%y%m%d}0001"

    client.post(f"/isp/tickets/{ticket['id']}/comments", json={"comment": "Check splitter", "is_internal": True})
    client.post(f"/isp/tickets/{ticket['id']}/comments", json={"comment": "Technician assigned"})

    response = client.post(f"/isp/tickets/{ticket['id']}", json={"status": "resolved"})
    assert response.get_json()["resolved_at"] is not None

    stats = client.get("/isp/tickets/stats").get_json()
    assert stats["resolved"] == 1
    assert stats["total"] == 1

    login_response = client.post("/portal/login", json={"username": "01711111111", "password": "portal123"})
    assert login_response.status_code == 200

    portal_tickets = client.get("/portal/tickets").get_json()["items"]
    assert [comment["comment"] for comment in portal_tickets[0]["comments"]] == ["Technician assigned"]

    response = client.post("/portal/tickets", json={"subject": "Slow speed"})
    assert response.status_code == 201
    with app.app_context():
        created = SupportTicket.query.filter_by(subject="Slow speed").one()
        assert created.created_by_customer is True
        assert created.ticket_number == f"TKT{date.today():%y%m%d}0002"


def test_portal_dashboard_and_suspended_tenant(app, client):
    tenant_id = create_tenant(app)
    login(client)
    package_id = create_package(client)
    customer = create_customer(client, package_id=package_id)
    client.post(f"/isp/customers/{customer['id']}/recharge", json={"months": 1})
    response = client.post(f"/isp/customers/{customer['id']}/portal-password", json={})
    generated_password = response.get_json()["password"]
    client.get("/auth/logout")

    assert client.post("/portal/login", json={"username": customer["customer_code"], "password": "bad"}).status_code == 401
    response = client.post(
        "/portal/login", json={"username": customer["customer_code"], "password": generated_password}
    )
    assert response.status_code == 200

    dashboard = client.get("/portal/dashboard").get_json()
    assert dashboard["days_until_expiry"] == 30
    assert dashboard["package"]["name"] == "Home 10"
    assert dashboard["last_payment"]["amount_cents"] == 50000

    response = client.post("/portal/profile", json={"phone": "01999999999", "address": "House 5, Mirpur"})
    assert response.get_json()["phone"] == "8801999999999"
    assert client.post("/portal/profile", json={"phone": "0123"}).status_code == 400

    with app.app_context():
        tenant = db.session.get(Tenant, tenant_id)
        tenant.status = "suspended"
        db.session.commit()

    response = client.get("/portal/dashboard")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "suspended"


# OLT / ONU monitoring and polling server


def test_olt_limit_reached(app, client):
    create_tenant(app, max_olts=1)
    login(client)
    first = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2", "brand": "ZTE"})
    assert first.status_code == 201
    second = client.post("/isp/olts", json={"name": "Edge OLT", "ip_address": "10.0.0.3"})
    assert second.status_code == 403
    assert second.get_json()["reason"] == "limit_reached"

    bad_brand = client.post(f"/isp/olts/{first.get_json()['id']}", json={"brand": "Cisco"})
    assert bad_brand.status_code == 400


def test_poll_olt_forwards_to_polling_server(app, client, monkeypatch):
    create_tenant(app)
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()

    calls: list[tuple[str, str, dict | None]] = []

    def fake_request(method, url, json=None, headers=None, timeout=None):
        calls.append((method, url, json))
        return DummyResponse({"success": True, "onus": 12})

    monkeypatch.setattr(app_module.requests, "request", fake_request)

    response = client.post(f"/isp/olts/{olt['id']}/poll")
    assert response.status_code == 200
    assert response.get_json()["result"] == {"success": True, "onus": 12}
    assert response.get_json()["olt"]["last_polled"] is not None
    assert calls == [("POST", f"http://poller.test/api/poll/{olt['id']}", None)]

    response = client.post(
        "/isp/olts/test-connection",
        json={"ip_address": "10.0.0.9", "username": "admin", "password": "pw", "brand": "VSOL"},
    )
    assert response.status_code == 200
    assert calls[-1][1] == "http://poller.test/api/test-connection"
    assert calls[-1][2]["ip"] == "10.0.0.9"


def test_polling_server_errors_become_bad_gateway(app, client, monkeypatch):
    create_tenant(app)
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()

    def html_error(method, url, json=None, headers=None, timeout=None):
        return DummyResponse(None, status_code=502, text="<html><body>Bad Gateway</body></html>")

    monkeypatch.setattr(app_module.requests, "request", html_error)
    response = client.post(f"/isp/olts/{olt['id']}/poll")
    assert response.status_code == 502
    assert "Nginx" in response.get_json()["error"]

    def timeout_error(method, url, json=None, headers=None, timeout=None):
        raise app_module.requests.Timeout("slow")

    monkeypatch.setattr(app_module.requests, "request", timeout_error)
    response = client.post(f"/isp/olts/{olt['id']}/poll")
    assert response.status_code == 502
    assert "timed out" in response.get_json()["error"]

    with app.app_context():
        assert db.session.get(OLT, olt["id"]).last_polled is None


def test_missing_polling_server_url(app, client):
    create_tenant(app)
    app.config["POLLING_SERVER_URL"] = ""
    login(client)
    response = client.post("/isp/olts/test-connection", json={"ip_address": "10.0.0.9"})
    assert response.status_code == 502
    assert response.get_json()["error"] == "Polling server URL is not configured."


def test_onu_sync_raises_alerts_and_emails_critical(app, client):
    tenant_id = create_tenant(app)
    delivered: list[tuple[str, str, str]] = []

    def fake_sender(recipient, subject, body):
        delivered.append((recipient, subject, body))
        return True

    app.config["ALERT_EMAIL_SENDER"] = fake_sender
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()

    response = client.post(
        f"/isp/olts/{olt['id']}/onus/sync",
        json={"onus": [{"pon_port": "0/1", "onu_index": 3, "name": "Rahim ONU", "status": "online", "rx_power": -20.1}]},
    )
    assert response.status_code == 200
    assert response.get_json()["created"] == 1
    assert response.get_json()["alerts"] == []

    response = client.post(
        f"/isp/olts/{olt['id']}/onus/sync",
        json=[
            {"pon_port": "0/1", "onu_index": 3, "status": "offline", "rx_power": -31.2},
            {"pon_port": "", "onu_index": 4},
        ],
    )
    payload = response.get_json()
    assert payload["updated"] == 1
    assert payload["skipped"] == 1
    assert sorted((alert["type"], alert["severity"]) for alert in payload["alerts"]) == [
        ("onu_offline", "warning"),
        ("power_drop", "critical"),
    ]
    assert payload["emailed"] == 1
    assert delivered[0][0] == "owner@fiberlink.test"
    assert "Low RX power" in delivered[0][1]

    with app.app_context():
        alerts = Alert.query.filter_by(tenant_id=tenant_id).all()
        onu_id = app_module.ONU.query.one().id
        assert {alert.device_id for alert in alerts} == {onu_id}

    onus = client.get("/isp/onus?power=poor").get_json()
    assert onus["total"] == 1
    assert onus["items"][0]["status"] == "offline"
    assert onus["items"][0]["last_offline"] is not None

    monitoring = client.get("/isp/monitoring/dashboard").get_json()
    assert monitoring["onus"]["offline"] == 1
    assert monitoring["active_alerts"] == 2
    assert monitoring["average_rx_power"] == -31.2

    assert client.get("/isp/alerts?unread=1").get_json()["total"] == 2
    assert client.post("/isp/alerts/read-all").get_json()["updated"] == 2
    assert client.get("/isp/alerts?unread=1").get_json()["total"] == 0


def test_alert_email_skipped_without_email_module(app, client):
    create_tenant(app, features={"olt_care": True, "billing": True})
    delivered: list[str] = []
    app.config["ALERT_EMAIL_SENDER"] = lambda recipient, subject, body: delivered.append(subject) or True
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()

    response = client.post(
        f"/isp/olts/{olt['id']}/onus/sync",
        json=[{"pon_port": "0/2", "onu_index": 1, "status": "online", "rx_power": -35}],
    )
    assert response.get_json()["emailed"] == 0
    assert delivered == []


def test_power_drop_escalates_from_warning_to_critical(app, client):
    create_tenant(app)
    delivered: list[str] = []
    app.config["ALERT_EMAIL_SENDER"] = lambda recipient, subject, body: delivered.append(subject) or True
    login(client)
    olt = client.post("/isp/olts", json={"name": "Core OLT", "ip_address": "10.0.0.2"}).get_json()

    def sync(rx_power):
        response = client.post(
            f"/isp/olts/{olt['id']}/onus/sync",
            json=[{"pon_port": "0/1", "onu_index": 7, "status": "online", "rx_power": rx_power}],
        )
        assert response.status_code == 200
        return response.get_json()

    assert sync(-20)["alerts"] == []

    warning = sync(-28)
    assert [(alert["type"], alert["severity"]) for alert in warning["alerts"]] == [("power_drop", "warning")]
    assert warning["emailed"] == 0

    critical = sync(-32)
    assert [(alert["type"], alert["severity"]) for alert in critical["alerts"]] == [("power_drop", "critical")]
    assert critical["emailed"] == 1
    assert len(delivered) == 1

    assert sync(-33)["alerts"] == []


def test_mikrotik_primary_router_is_unique(app, client):
    tenant_id = create_tenant(app)
    login(client)
    first = client.post(
        "/isp/mikrotik", json={"name": "Core", "ip_address": "10.0.0.1", "username": "api"}
    ).get_json()
    assert first["is_primary"] is True
    second = client.post(
        "/isp/mikrotik",
        json={"name": "Backup", "ip_address": "10.0.0.5", "username": "api", "is_primary": True},
    ).get_json()
    assert second["is_primary"] is True

    with app.app_context():
        primaries = MikroTikRouter.query.filter_by(tenant_id=tenant_id, is_primary=True).all()
        assert [router.id for router in primaries] == [second["id"]]


def test_customer_bandwidth_keeps_rolling_window(app, client, monkeypatch):
    create_tenant(app)
    login(client)
    app.extensions["bandwidth_window"] = BandwidthWindow(3)
    client.post(
        "/isp/mikrotik",
        json={"name": "Core", "ip_address": "10.0.0.1", "username": "api", "password": "pw"},
    )
    customer = create_customer(client, pppoe_username="rahim01")

    requests_seen: list[tuple[str, dict]] = []

    def fake_request(method, url, json=None, headers=None, timeout=None):
        requests_seen.append((url, json))
        if url.endswith("/pppoe/status"):
            return DummyResponse({"online": True, "uptime": "1d2h"})
        return DummyResponse({"data": {"rx_bps": 5_000_000, "tx_bps": 1_500_000}})

    monkeypatch.setattr(app_module.requests, "request", fake_request)

    for _ in range(5):
        response = client.get(f"/isp/customers/{customer['id']}/bandwidth")
        assert response.status_code == 200

    payload = response.get_json()
    assert len(payload["points"]) == 3
    assert payload["points"][-1]["rx_mbps"] == 5.0
    assert payload["points"][-1]["tx_mbps"] == 1.5
    assert payload["window_size"] == 3
    assert payload["poll_interval_seconds"] == 5
    assert requests_seen[0][0] == "http://poller.test/api/mikrotik/pppoe/bandwidth"
    assert requests_seen[0][1] == {
        "mikrotik": {"ip": "10.0.0.1", "port": 8728, "username": "api", "password": "pw"},
        "username": "rahim01",
    }

    status = client.get(f"/isp/customers/{customer['id']}/pppoe-status").get_json()
    assert status["status"]["online"] is True

    no_pppoe = create_customer(client, name="No PPPoE", phone="01822222222")
    assert client.get(f"/isp/customers/{no_pppoe['id']}/bandwidth").status_code == 400


def test_bandwidth_without_router_is_bad_gateway(app, client):
    create_tenant(app)
    login(client)
    customer = create_customer(client, pppoe_username="rahim01")
    response = client.get(f"/isp/customers/{customer['id']}/bandwidth")
    assert response.status_code == 502
    assert response.get_json()["error"] == "No MikroTik router is configured."


# User management


def test_user_limit_and_delete_rules(app, client):
    tenant_id = create_tenant(app, max_users=2)
    login(client)

    response = client.post(
        "/isp/users",
        json={"email": "ops@fiberlink.test", "password": "opspass1", "role": "operator", "full_name": "Ops"},
    )
    assert response.status_code == 201
    operator_id = response.get_json()["id"]

    response = client.post("/isp/users", json={"email": "extra@fiberlink.test", "password": "extrapass"})
    assert response.status_code == 403
    assert response.get_json()["reason"] == "limit_reached"

    listing = client.get("/isp/users?role=operator").get_json()
    assert [item["email"] for item in listing["items"]] == ["ops@fiberlink.test"]

    with app.app_context():
        owner_id = User.query.filter_by(tenant_id=tenant_id, is_owner=True).one().id

    assert client.post(f"/isp/users/{owner_id}/delete").status_code == 400
    assert client.post(f"/isp/users/{operator_id}", json={"role": "super_admin"}).status_code == 400
    assert client.post(f"/isp/users/{operator_id}/delete").status_code == 200

    with app.app_context():
        assert db.session.get(User, operator_id) is None


def test_operator_cannot_manage_users(app, client):
    tenant_id = create_tenant(app)
    with app.app_context():
        operator = User(tenant_id=tenant_id, email="ops@fiberlink.test", role="operator")
        operator.set_password("opspass1")
        db.session.add(operator)
        db.session.commit()

    login(client, "ops@fiberlink.test", "opspass1")
    assert client.get("/isp/users").status_code == 403
    assert client.get("/isp/olts").status_code == 200


def test_unknown_route_returns_json_404(client):
    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert "error" in response.get_json()


def test_other_tenant_records_are_hidden(app, client):
    other_tenant_id = create_tenant(app, email="owner@other.test", name="Other ISP")
    with app.app_context():
        package = ISPPackage(tenant_id=other_tenant_id, name="Other Plan", price_cents=1000)
        db.session.add(package)
        db.session.commit()
        package_id = package.id

    create_tenant(app)
    login(client)
    response = client.post(f"/isp/packages/{package_id}", json={"name": "Hijacked"})
    assert response.status_code == 404
