import asyncio
import inspect
import os

# Configure the process before anything imports poolauth settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("DATA_PROVIDER", "memory")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("ISSUER_URL", "https://id.example.test")
# Pending flows use the in-process fallback unless a test opts into Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from poolauth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeGrant:
    def __init__(self, engine, account_id, client_id, grant_id=None):
        self.engine = engine
        self.account_id = account_id
        self.client_id = client_id
        self.grant_id = grant_id
        self.oidc_scopes = []
        self.oidc_claims = []
        self.resource_scopes = {}

    def add_oidc_scope(self, scope):
        self.oidc_scopes.extend(scope.split())

    def add_oidc_claims(self, claims):
        self.oidc_claims.extend(claims)

    def add_resource_scope(self, indicator, scope):
        self.resource_scopes[indicator] = scope

    async def save(self):
        if not self.grant_id:
            self.grant_id = f"grant-{len(self.engine.grants) + 1}"
        self.engine.grants[self.grant_id] = self
        return self.grant_id


class FakeEngine:
    """Stands in for the OIDC provider: interactions, grants and client cache."""

    def __init__(self):
        self.interactions = {}
        self.finished = {}
        self.grants = {}
        self.clients = []

    def start(
        self,
        uid,
        *,
        prompt="login",
        client_id="c1",
        session_account_id=None,
        grant_id=None,
        missing_oidc_scope=(),
        missing_oidc_claims=(),
        missing_resource_scopes=None,
        params=None,
    ):
        from poolauth.service.engine import InteractionContext

        ctx = InteractionContext(
            uid=uid,
            prompt_name=prompt,
            client_id=client_id,
            session_account_id=session_account_id,
            grant_id=grant_id,
            missing_oidc_scope=list(missing_oidc_scope),
            missing_oidc_claims=list(missing_oidc_claims),
            missing_resource_scopes=dict(missing_resource_scopes or {}),
            params={"client_id": client_id, **(params or {})},
        )
        self.interactions[uid] = ctx
        return ctx

    def expire(self, uid):
        self.interactions.pop(uid, None)

    async def get_interaction_context(self, uid):
        from poolauth.service.engine import InteractionNotFound

        if uid not in self.interactions:
            raise InteractionNotFound(uid)
        return self.interactions[uid]

    async def finish_interaction(self, uid, result):
        from poolauth.service.engine import InteractionNotFound

        if uid not in self.interactions:
            raise InteractionNotFound(uid)
        del self.interactions[uid]
        self.finished[uid] = result
        return f"https://id.example.test/auth/{uid}"

    async def find_grant(self, grant_id):
        return self.grants.get(grant_id)

    def new_grant(self, *, account_id, client_id):
        return FakeGrant(self, account_id, client_id)

    async def load_clients(self, clients):
        self.clients = list(clients)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def runtime():
    from poolauth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def client_c1(runtime):
    """Client ``c1`` with its own pool ``pool-c1``."""

    return asyncio.run(
        runtime.clients.provision_client(
            client_name="Test App",
            redirect_uris=["https://app.example.test/callback"],
            client_id="c1",
        )
    )
