"""
Pytest fixtures for NexPOS backend tests.

Provides test database setup, a controllable payment gateway, users for
every role, and test client helpers.
"""

import pytest
from nexpos import create_app
from nexpos.extensions import db
from nexpos.models import User
from nexpos.services import auth_service, session_service
from nexpos.services.payment_gateway import SimulatedGateway, GatewayError, EXTENSION_KEY


PASSWORD = "Password123!"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(SimulatedGateway):
    """
    Simulated gateway with failure switches and a capture hook.

    - open_error / capture_error: raise GatewayError from that call
    - on_capture: callable run inside capture_confirmation (once), used to
      interleave a second confirmation with the first
    """

    def __init__(self):
        super().__init__(auto_succeed=False)
        self.open_error = None
        self.capture_error = None
        self.on_capture = None
        self.open_calls = 0
        self.capture_calls = 0

    def open_intent(self, amount_cents, currency, metadata=None):
        self.open_calls += 1
        if self.open_error:
            raise GatewayError(self.open_error)
        return super().open_intent(amount_cents, currency, metadata)

    def capture_confirmation(self, intent_id, payment_id):
        self.capture_calls += 1
        if self.capture_error:
            raise GatewayError(self.capture_error)
        payment = super().capture_confirmation(intent_id, payment_id)
        if self.on_capture:
            hook, self.on_capture = self.on_capture, None
            hook()
        return payment


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'PAYMENT_GATEWAY': 'simulated',
        'GATEWAY_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'VERIFICATION_TTL_SECONDS': 8 * 60 * 60,
        'FUNDING_MIN_CENTS': 500,
        'FUNDING_MAX_CENTS': 500_000,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    """Install a fresh fake gateway for each test."""
    fake = FakeGateway()
    app.extensions[EXTENSION_KEY] = fake
    yield fake
    app.extensions.pop(EXTENSION_KEY, None)


def _make_user(username, role, employee_role=None, employee_id=None):
    return auth_service.create_user(
        username=username,
        email=f"{username}@nexpos.test",
        password=PASSWORD,
        role=role,
        employee_role=employee_role,
        employee_id=employee_id,
    )


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user("admin", "admin")


@pytest.fixture(scope='function')
def employee_user(db_session):
    """Plain employee with employee id EMP-7 (must re-verify)."""
    return _make_user("emp7", "employee", employee_role="accountant", employee_id="EMP-7")


@pytest.fixture(scope='function')
def supervisor_user(db_session):
    """Admin-level employee (exempt from re-verification)."""
    return _make_user("supervisor", "employee", employee_role="admin", employee_id="EMP-1")


@pytest.fixture(scope='function')
def retailer_user(db_session):
    return _make_user("retailer1", "retailer")


@pytest.fixture(scope='function')
def other_retailer(db_session):
    return _make_user("retailer2", "retailer")


def context_for(user: User):
    """Log a user in at the service layer and return their SessionContext."""
    _, token = session_service.create_session(user.id)
    return session_service.validate_session(token)


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def login_headers(client, username: str) -> dict:
    return auth_headers(get_auth_token(client, username))


def fresh(model, row_id):
    """Re-read a row after another session (e.g. a request) changed it."""
    db.session.expire_all()
    return db.session.get(model, row_id)
