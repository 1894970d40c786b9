from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base, get_db
from periods import local_today


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple] = []
        self.fail_support = False

    def send_reset_code(self, to, code):
        self.sent.append(("reset", to, code))

    def send_registration_notice(self, user_id, email, name):
        self.sent.append(("registration", email))

    def send_support_message(self, sender_name, sender_email, category, subject, message):
        if self.fail_support:
            raise ConnectionError("smtp down")
        self.sent.append(("support", sender_email, subject))

    def send_support_confirmation(self, to, name, category, subject, message):
        self.sent.append(("confirmation", to))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def client(mailer):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db: Session = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_db
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _register(client, email="ana@example.com"):
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": "segredo1", "name": "Ana"},
    )
    assert response.status_code == 201
    return response.json()


def _auth(session_payload) -> dict[str, str]:
    return {"Authorization": f"Bearer {session_payload['access_token']}"}


def _expense_body(**overrides):
    body = {
        "date": local_today().replace(day=1).isoformat(),
        "category": "Lazer",
        "description": "Videogame",
        "unit_value_cents": 300000,
        "quantity": 1,
        "payment_method": "Cartão de Crédito",
        "installments": 3,
    }
    body.update(overrides)
    return body


def test_register_login_and_me(client, mailer):
    registered = _register(client)
    assert registered["user"]["email"] == "ana@example.com"
    assert ("registration", "ana@example.com") in mailer.sent

    response = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "segredo1"}
    )
    assert response.status_code == 200

    me = client.get("/api/auth/me", headers=_auth(response.json()))
    assert me.json()["name"] == "Ana"


def test_login_with_wrong_password_is_unauthorized(client):
    _register(client)
    response = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "nope"}
    )
    assert response.status_code == 401


def test_protected_routes_require_token(client):
    assert client.get("/api/expenses").status_code == 401
    response = client.get(
        "/api/expenses", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


def test_refresh_rotates_tokens(client):
    registered = _register(client)
    response = client.post(
        "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
    )
    assert response.status_code == 200
    assert response.json()["refresh_token"] != registered["refresh_token"]

    replay = client.post(
        "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
    )
    assert replay.status_code == 401


def test_logout_revokes_refresh_token(client):
    registered = _register(client)
    response = client.post(
        "/api/auth/logout", json={"refresh_token": registered["refresh_token"]}
    )
    assert response.status_code == 200
    replay = client.post(
        "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
    )
    assert replay.status_code == 401


def test_expense_listing_is_installment_aware(client):
    headers = _auth(_register(client))
    created = client.post("/api/expenses", json=_expense_body(), headers=headers)
    assert created.status_code == 201

    response = client.get("/api/expenses", headers=headers)
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 1
    assert payload["total_pages"] == 1
    item = payload["expenses"][0]
    assert item["current_installment"] == 1
    assert item["total_installments"] == 3
    assert item["current_installment_value_cents"] == 100000
    assert item["display_description"] == "Videogame (1/3)"


def test_stats_use_current_installment_value(client):
    headers = _auth(_register(client))
    client.post("/api/expenses", json=_expense_body(), headers=headers)
    client.post(
        "/api/expenses",
        json=_expense_body(
            category="Alimentação",
            description="Mercado",
            unit_value_cents=100000,
            installments=None,
            payment_method="PIX",
        ),
        headers=headers,
    )

    stats = client.get("/api/expenses/stats", headers=headers).json()
    assert stats["total_spent_cents"] == 200000
    assert stats["monthly_spent_cents"] == 200000
    assert stats["category_breakdown"] == {"Lazer": 100000, "Alimentação": 100000}


def test_expense_validation_and_ownership(client):
    ana = _auth(_register(client))
    bia = _auth(_register(client, email="bia@example.com"))

    bad = client.post(
        "/api/expenses", json=_expense_body(unit_value_cents=0), headers=ana
    )
    assert bad.status_code == 422

    expense_id = client.post("/api/expenses", json=_expense_body(), headers=ana).json()[
        "id"
    ]
    assert client.get(f"/api/expenses/{expense_id}", headers=bia).status_code == 404
    assert client.delete(f"/api/expenses/{expense_id}", headers=bia).status_code == 404

    updated = client.patch(
        f"/api/expenses/{expense_id}", json={"is_paid": True}, headers=ana
    )
    assert updated.status_code == 200
    assert updated.json()["payment_date"] is not None

    assert client.delete(f"/api/expenses/{expense_id}", headers=ana).status_code == 200


def test_invalid_filters_and_sort_are_bad_requests(client):
    headers = _auth(_register(client))
    response = client.get(
        "/api/expenses",
        params={"start_date": "2024-05-10", "end_date": "2024-05-01"},
        headers=headers,
    )
    assert response.status_code == 400
    response = client.get("/api/expenses", params={"sort_by": "name"}, headers=headers)
    assert response.status_code == 400


def test_recurring_run_creates_current_month_instance(client):
    headers = _auth(_register(client))
    last_month = local_today().replace(day=1) - date.resolution
    client.post(
        "/api/expenses",
        json=_expense_body(
            date=last_month.replace(day=1).isoformat(),
            category="Moradia",
            description="Aluguel",
            unit_value_cents=150000,
            installments=None,
            payment_method="PIX",
            is_fixed=True,
            is_paid=True,
        ),
        headers=headers,
    )

    first = client.post("/api/recurring/run", headers=headers).json()
    second = client.post("/api/recurring/run", headers=headers).json()

    assert first["created"] == 1
    assert second["created"] == 0
    listing = client.get("/api/expenses", params={"fixed": "true"}, headers=headers)
    assert listing.json()["total"] == 2


def test_password_reset_flow(client, mailer):
    _register(client)
    unknown = client.post("/api/auth/reset-password", json={"email": "x@example.com"})
    response = client.post("/api/auth/reset-password", json={"email": "ana@example.com"})
    assert unknown.json() == response.json()

    code = next(entry[2] for entry in mailer.sent if entry[0] == "reset")
    verified = client.post(
        "/api/auth/verify-code", json={"email": "ana@example.com", "code": code}
    )
    assert verified.status_code == 200

    reset = client.post(
        "/api/auth/verify-reset-code",
        json={"email": "ana@example.com", "code": code, "new_password": "novasenha"},
    )
    assert reset.status_code == 200
    login = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "novasenha"}
    )
    assert login.status_code == 200


def test_incomes_and_earnings_crud(client):
    headers = _auth(_register(client))
    income = client.post(
        "/api/incomes",
        json={"description": "Salário", "amount_cents": 500000},
        headers=headers,
    )
    assert income.status_code == 201
    income_id = income.json()["id"]
    patched = client.patch(
        f"/api/incomes/{income_id}", json={"amount_cents": 550000}, headers=headers
    )
    assert patched.json()["amount_cents"] == 550000

    earning = client.post(
        "/api/earnings",
        json={
            "date": local_today().isoformat(),
            "description": "Freela",
            "amount_cents": 20000,
            "client": "ACME",
        },
        headers=headers,
    )
    assert earning.status_code == 201

    stats = client.get("/api/expenses/stats", headers=headers).json()
    assert stats["monthly_income_cents"] == 570000
    assert stats["income_count"] == 1

    earning_id = earning.json()["id"]
    assert client.delete(f"/api/earnings/{earning_id}", headers=headers).status_code == 200
    assert client.get("/api/earnings", headers=headers).json() == []
    assert client.delete(f"/api/incomes/{income_id}", headers=headers).status_code == 200
    assert client.get("/api/incomes", headers=headers).json() == []


def test_support_contact_requires_email_when_anonymous(client, mailer):
    body = {"subject": "Dúvida", "category": "Geral", "message": "Olá"}
    assert client.post("/api/support/contact", json=body).status_code == 400

    response = client.post(
        "/api/support/contact", json={**body, "email": "visitante@example.com"}
    )
    assert response.status_code == 200
    assert ("support", "visitante@example.com", "Dúvida") in mailer.sent
    assert ("confirmation", "visitante@example.com") in mailer.sent


def test_support_contact_reports_mail_failure(client, mailer):
    headers = _auth(_register(client))
    mailer.fail_support = True
    response = client.post(
        "/api/support/contact",
        json={"subject": "Bug", "category": "Erro", "message": "Quebrou"},
        headers=headers,
    )
    assert response.status_code == 500
