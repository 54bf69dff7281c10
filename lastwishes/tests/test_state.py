import unittest
from unittest.mock import Mock

from lastwishes.db import InMemoryDbClient
from lastwishes.errors import BackendError
from lastwishes.identity import AuthClient, AuthEvent, AuthSession, InMemoryIdentityService, User
from lastwishes.session_store import InMemorySessionStore
from lastwishes.state import PortalRegistry, PortalState, View, ViewRouter


class ViewRouterTests(unittest.TestCase):
    def setUp(self):
        self.session = AuthSession("t", "r", User("u1", "a@x.com"))

    def test_sign_in_from_auth_views_goes_to_dashboard(self):
        for view in (View.LOGIN, View.SIGNUP, View.RESET_PASSWORD):
            router = ViewRouter(view)
            self.assertEqual(
                router.on_auth_event(AuthEvent.SIGNED_IN, self.session), View.DASHBOARD
            )

    def test_sign_in_elsewhere_keeps_view(self):
        router = ViewRouter(View.HOME)
        self.assertEqual(router.on_auth_event(AuthEvent.SIGNED_IN, self.session), View.HOME)

    def test_recovery_always_goes_to_reset_password(self):
        for view in View:
            router = ViewRouter(view)
            self.assertEqual(
                router.on_auth_event(AuthEvent.PASSWORD_RECOVERY, self.session),
                View.RESET_PASSWORD,
            )

    def test_losing_session_on_dashboard_goes_home(self):
        router = ViewRouter(View.DASHBOARD)
        self.assertEqual(router.on_auth_event(AuthEvent.SIGNED_OUT, None), View.HOME)

    def test_losing_session_elsewhere_keeps_view(self):
        router = ViewRouter(View.LOGIN)
        self.assertEqual(router.on_auth_event(AuthEvent.SIGNED_OUT, None), View.LOGIN)

    def test_token_refresh_is_not_a_transition(self):
        router = ViewRouter(View.SIGNUP)
        self.assertEqual(
            router.on_auth_event(AuthEvent.TOKEN_REFRESHED, self.session), View.SIGNUP
        )

    def test_dashboard_needs_a_session(self):
        router = ViewRouter()
        self.assertEqual(router.navigate(View.DASHBOARD, has_session=False), View.LOGIN)
        self.assertEqual(router.navigate(View.DASHBOARD, has_session=True), View.DASHBOARD)
        self.assertEqual(router.navigate(View.HOME, has_session=True), View.HOME)


class PortalStateTests(unittest.TestCase):
    def setUp(self):
        self.identity = InMemoryIdentityService()
        self.user, _ = self.identity.sign_up("a@x.com", "secret1", {"name": "A"})
        self.db = InMemoryDbClient()
        self.markers = InMemorySessionStore()
        self.migrate = Mock()
        self.portal = PortalState(
            "portal-1",
            AuthClient(self.identity),
            db=self.db,
            markers=self.markers,
            migrate=self.migrate,
        )

    def test_starts_signed_out_at_home(self):
        self.assertEqual(self.portal.view, View.HOME)
        self.assertIsNone(self.portal.user)
        self.assertFalse(self.portal.is_admin)

    def test_sign_in_from_login_opens_dashboard_and_migrates(self):
        self.portal.navigate(View.LOGIN)
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")

        self.assertEqual(self.portal.view, View.DASHBOARD)
        self.assertEqual(self.portal.user.id, self.user.id)
        self.migrate.assert_called_once_with(self.user.id, "a@x.com")

    def test_sign_out_from_dashboard_goes_home_and_clears_markers(self):
        self.portal.navigate(View.LOGIN)
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.portal.auth.sign_out()

        self.assertEqual(self.portal.view, View.HOME)
        self.assertEqual(self.markers.keys("portal-1"), [])

        self.portal.navigate(View.LOGIN)
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.assertEqual(self.migrate.call_count, 2)

    def test_recovery_opens_reset_password_without_migrating(self):
        self.portal.auth.reset_password_for_email("a@x.com", "http://localhost")
        token = self.identity.recovery_tokens["a@x.com"]

        self.portal.auth.verify_recovery("a@x.com", token)

        self.assertEqual(self.portal.view, View.RESET_PASSWORD)
        self.migrate.assert_not_called()

    def test_admin_role_loaded_on_sign_in(self):
        self.db.set_user_role(self.user.id, "admin")
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.assertEqual(self.portal.role, "admin")
        self.assertTrue(self.portal.is_admin)

        self.portal.auth.sign_out()
        self.assertIsNone(self.portal.role)
        self.assertFalse(self.portal.is_admin)

    def test_role_lookup_failure_leaves_no_role(self):
        self.db.get_user_role = Mock(side_effect=BackendError("timeout"))
        with self.assertLogs("lastwishes.state", level="ERROR"):
            self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.assertIsNone(self.portal.role)

    def test_prefill(self):
        self.portal.set_prefill(email="a@x.com", name="A")
        self.portal.set_prefill(name=None)
        self.assertEqual(self.portal.snapshot()["prefill"], {"email": "a@x.com"})
        self.portal.clear_prefill()
        self.assertEqual(self.portal.prefill, {})

    def test_snapshot(self):
        self.portal.navigate(View.SIGNUP)
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        snapshot = self.portal.snapshot()
        self.assertEqual(snapshot["view"], "dashboard")
        self.assertEqual(snapshot["user"]["email"], "a@x.com")
        self.assertEqual(snapshot["user"]["user_metadata"], {"name": "A"})

    def test_close_stops_listening(self):
        self.portal.close()
        self.portal.navigate(View.LOGIN)
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.assertEqual(self.portal.view, View.LOGIN)
        self.migrate.assert_not_called()

    def test_expire_drops_markers(self):
        self.portal.auth.sign_in_with_password("a@x.com", "secret1")
        self.assertNotEqual(self.markers.keys("portal-1"), [])
        self.portal.expire()
        self.assertEqual(self.markers.keys("portal-1"), [])


class PortalRegistryTests(unittest.TestCase):
    def setUp(self):
        self.factory = Mock(side_effect=lambda portal_id: Mock(portal_id=portal_id))
        self.registry = PortalRegistry(self.factory)

    def test_reuses_known_portal(self):
        portal = self.registry.get_or_create(None)
        self.assertIs(self.registry.get_or_create(portal.portal_id), portal)
        self.assertEqual(self.factory.call_count, 1)

    def test_unknown_id_gets_fresh_portal(self):
        portal = self.registry.get_or_create("chosen-by-client")
        self.assertNotEqual(portal.portal_id, "chosen-by-client")
        self.assertIsNone(self.registry.get("chosen-by-client"))

    def test_clear_closes_portals(self):
        portal = self.registry.get_or_create(None)
        self.registry.clear()
        portal.close.assert_called_once_with()
        self.assertIsNone(self.registry.get(portal.portal_id))

    def test_idle_portals_are_evicted(self):
        now = [0.0]
        registry = PortalRegistry(self.factory, idle_ttl_seconds=60, clock=lambda: now[0])
        idle = registry.get_or_create(None)
        active = registry.get_or_create(None)

        now[0] = 50.0
        self.assertIs(registry.get_or_create(active.portal_id), active)
        now[0] = 100.0
        with self.assertLogs("lastwishes.state", level="INFO"):
            self.assertIs(registry.get_or_create(active.portal_id), active)

        idle.expire.assert_called_once_with()
        active.expire.assert_not_called()
        self.assertIsNone(registry.get(idle.portal_id))
        self.assertNotEqual(registry.get_or_create(idle.portal_id), idle)
        self.assertEqual(len(registry), 2)

    def test_cookieless_requests_do_not_accumulate(self):
        now = [0.0]
        registry = PortalRegistry(self.factory, idle_ttl_seconds=60, clock=lambda: now[0])
        for _ in range(500):
            registry.get_or_create(None)
        now[0] = 61.0
        with self.assertLogs("lastwishes.state", level="INFO"):
            registry.get_or_create(None)
        self.assertEqual(len(registry), 1)


if __name__ == "__main__":
    unittest.main()
