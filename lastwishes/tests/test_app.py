import unittest
from unittest.mock import AsyncMock, patch

from fastapi import Request
from fastapi.testclient import TestClient

from lastwishes.accounts import INVALID_CREDENTIALS_HINT
from lastwishes.app import create_app
from lastwishes.config import get_settings
from lastwishes.dependencies import (
    get_db_client,
    get_function_client,
    get_identity_service,
    get_portal_registry,
    get_storage_client,
    reset_dependencies,
)
from lastwishes.errors import BackendError, OperationCancelled
from lastwishes.storage import DOCUMENTS_BUCKET, MEMORIES_BUCKET

PLEDGE = {
    "full_name": "A",
    "dob": "1990-01-01",
    "contact": "9999999999",
    "email": "a@x.com",
    "service_grade": "2",
    "memorable_deeds": "Taught the neighbourhood kids to read",
}


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        reset_dependencies()
        self.app = create_app()
        self.client = TestClient(self.app)

    def tearDown(self):
        reset_dependencies()

    def new_client(self) -> TestClient:
        return TestClient(self.app)

    def sign_up(self, client, email, password="secret1", name="Patron"):
        client.post("/api/view", json={"view": "signup"})
        response = client.post(
            "/api/auth/signup", json={"name": name, "email": email, "password": password}
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class PortalSessionTests(ApiTestCase):
    def test_healthz(self):
        response = self.client.get("/api/healthz")
        self.assertEqual(response.json(), {"status": "ok"})

    def test_new_visitor_gets_portal_cookie(self):
        response = self.client.get("/api/session")
        self.assertEqual(response.status_code, 200)
        self.assertIn("lw_portal", response.cookies)
        self.assertEqual(response.json()["view"], "home")
        self.assertIsNone(response.json()["user"])

        again = self.client.get("/api/session")
        self.assertNotIn("lw_portal", again.cookies)

    def test_dashboard_without_session_redirects_to_login(self):
        response = self.client.post("/api/view", json={"view": "dashboard"})
        self.assertEqual(response.json()["view"], "login")

    def test_dashboard_routes_require_session(self):
        response = self.client.get("/api/dashboard/wishes")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(
            response.json()["message"], {"type": "error", "text": "Auth session missing!"}
        )

    def current_portal(self):
        return get_portal_registry().get(self.client.cookies["lw_portal"])

    def test_expired_session_is_refreshed_on_request(self):
        self.sign_up(self.client, "a@x.com")
        session = self.current_portal().session
        session.expires_at = 0

        response = self.client.get("/api/dashboard/wishes")

        self.assertEqual(response.status_code, 200)
        refreshed = self.current_portal().session
        self.assertNotEqual(refreshed.access_token, session.access_token)
        self.assertEqual(self.client.get("/api/session").json()["view"], "dashboard")

    def test_rejected_refresh_signs_the_portal_out(self):
        self.sign_up(self.client, "a@x.com")
        self.current_portal().session.expires_at = 0
        get_identity_service().refresh_tokens.clear()

        response = self.client.get("/api/dashboard/wishes")

        self.assertEqual(response.status_code, 401)
        body = self.client.get("/api/session").json()
        self.assertEqual(body["view"], "home")
        self.assertIsNone(body["user"])

    def test_login_with_bad_credentials_shows_hint(self):
        self.sign_up(self.new_client(), "a@x.com")
        response = self.client.post(
            "/api/auth/login", json={"email": "a@x.com", "password": "wrong-pass"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["message"]["text"], INVALID_CREDENTIALS_HINT)

    def test_login_remember_me_prefills_email(self):
        self.sign_up(self.new_client(), "a@x.com")
        self.client.post("/api/view", json={"view": "login"})
        response = self.client.post(
            "/api/auth/login",
            json={"email": "a@x.com", "password": "secret1", "remember_me": True},
        )
        body = response.json()
        self.assertEqual(body["view"], "dashboard")
        self.assertEqual(body["prefill"], {"email": "a@x.com"})

        body = self.client.post("/api/auth/logout").json()
        self.assertEqual(body["view"], "home")
        self.assertIsNone(body["user"])

    def test_signup_requiring_confirmation(self):
        get_identity_service().auto_confirm = False
        body = self.sign_up(self.client, "new@x.com")
        self.assertIsNone(body["user"])
        self.assertEqual(
            body["message"]["text"],
            "Signup successful! Please check your email to confirm your account.",
        )

        response = self.client.post(
            "/api/auth/login", json={"email": "new@x.com", "password": "secret1"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["message"]["text"], "Email not confirmed")

    def test_duplicate_signup(self):
        self.sign_up(self.new_client(), "a@x.com")
        response = self.client.post(
            "/api/auth/signup",
            json={"name": "A", "email": "a@x.com", "password": "secret1"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"]["text"], "User already registered")

    def test_password_reset_flow(self):
        self.sign_up(self.new_client(), "a@x.com")

        empty = self.client.post("/api/auth/password-reset", json={"email": ""}).json()
        self.assertEqual(empty["message"]["type"], "info")

        sent = self.client.post("/api/auth/password-reset", json={"email": "a@x.com"}).json()
        self.assertEqual(sent["message"]["type"], "success")

        token = get_identity_service().recovery_tokens["a@x.com"]
        body = self.client.post(
            "/api/auth/recovery", json={"email": "a@x.com", "token": token}
        ).json()
        self.assertEqual(body["view"], "reset_password")

        mismatch = self.client.post(
            "/api/auth/password", json={"password": "newpass1", "confirm_password": "nope"}
        )
        self.assertEqual(mismatch.status_code, 400)
        self.assertEqual(mismatch.json()["message"]["text"], "Passwords do not match.")

        body = self.client.post(
            "/api/auth/password",
            json={"password": "newpass1", "confirm_password": "newpass1"},
        ).json()
        self.assertEqual(body["view"], "login")
        self.assertIsNone(body["user"])

        response = self.client.post(
            "/api/auth/login", json={"email": "a@x.com", "password": "newpass1"}
        )
        self.assertEqual(response.json()["view"], "dashboard")


class PledgeApiTests(ApiTestCase):
    def test_pledge_then_signup_migrates_everything(self):
        response = self.client.post(
            "/api/pledge",
            data=PLEDGE,
            files=[("files", ("photo.jpg", b"jpeg-bytes", "image/jpeg"))],
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["status"], "pending_signup")
        self.assertEqual(body["session"]["view"], "signup")
        self.assertEqual(body["session"]["prefill"], {"email": "a@x.com", "name": "A"})

        db = get_db_client()
        storage = get_storage_client()
        temp = db.get_temp_patron_by_email("a@x.com")
        self.assertIsNotNone(temp)
        self.assertEqual(temp.form_data["full_name"], "A")
        (bucket, temp_path), = storage.stored_objects
        self.assertEqual(bucket, MEMORIES_BUCKET)
        self.assertTrue(temp_path.startswith("temp/"))
        self.assertTrue(temp_path.endswith("/photo.jpg"))

        session = self.sign_up(self.client, "a@x.com", name="A")
        self.assertEqual(session["view"], "dashboard")
        self.assertEqual(session["prefill"], {})
        user_id = session["user"]["id"]

        patron = db.get_patron(user_id)
        self.assertEqual(
            patron["top_memories_url"],
            [storage.public_url(MEMORIES_BUCKET, f"{user_id}/photo.jpg")],
        )
        self.assertIsNone(db.get_temp_patron_by_email("a@x.com"))
        self.assertFalse(storage.exists(MEMORIES_BUCKET, temp_path))

        profile = self.client.get("/api/dashboard/profile").json()["profile"]
        self.assertEqual(profile["full_name"], "A")
        self.assertEqual(profile["contact_number"], "9999999999")
        self.assertEqual(profile["service_grade"], "2")

    def test_invalid_pledge_is_rejected_before_any_write(self):
        response = self.client.post(
            "/api/pledge",
            data={**PLEDGE, "contact": "12345"},
            files=[("files", ("photo.jpg", b"jpeg-bytes", "image/jpeg"))],
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["errors"], {"contact": "Contact number is invalid."})
        self.assertIsNone(get_db_client().get_temp_patron_by_email("a@x.com"))
        self.assertEqual(get_storage_client().stored_objects, {})

    def test_signed_in_pledge_updates_record(self):
        user_id = self.sign_up(self.client, "a@x.com")["user"]["id"]
        form = self.client.get("/api/pledge").json()
        self.assertEqual(form["email"], "a@x.com")
        self.assertEqual(form["full_name"], "Patron")

        response = self.client.post(
            "/api/pledge",
            data={**PLEDGE, "full_name": "Patron A"},
            files=[("files", ("one.jpg", b"1", "image/jpeg"))],
        )
        body = response.json()
        self.assertEqual(body["status"], "saved")
        self.assertEqual(len(body["memory_urls"]), 1)
        self.assertEqual(get_db_client().get_patron(user_id)["full_name"], "Patron A")
        self.assertEqual(self.client.get("/api/pledge").json()["full_name"], "Patron A")

    def test_anonymous_pledge_form_uses_prefill(self):
        self.client.post("/api/pledge", data=PLEDGE)
        form = self.client.get("/api/pledge").json()
        self.assertEqual((form["email"], form["full_name"]), ("a@x.com", "A"))


class DashboardApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.sign_up(self.client, "a@x.com", name="A")

    def test_profile_update(self):
        response = self.client.put(
            "/api/dashboard/profile", json={"occupation": "Teacher", "religion": "Hindu"}
        )
        body = response.json()
        self.assertEqual(body["profile"]["occupation"], "Teacher")
        self.assertEqual(body["message"]["text"], "Profile updated successfully!")

    def test_avatar_upload_and_removal(self):
        response = self.client.post(
            "/api/dashboard/profile/avatar",
            files={"file": ("me.png", b"png-bytes", "image/png")},
        )
        profile = response.json()["profile"]
        self.assertIn(f"{profile['id']}/avatar.png?t=", profile["avatar_url"])

        profile = self.client.delete("/api/dashboard/profile/avatar").json()["profile"]
        self.assertIsNone(profile["avatar_url"])
        self.assertFalse(
            get_storage_client().exists(MEMORIES_BUCKET, f"{profile['id']}/avatar.png")
        )

    def test_avatar_too_large(self):
        response = self.client.post(
            "/api/dashboard/profile/avatar",
            files={"file": ("me.png", b"0" * (2 * 1024 * 1024 + 1), "image/png")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("File size too large", response.json()["message"]["text"])

    def test_memories_upload_and_delete(self):
        response = self.client.post(
            "/api/dashboard/profile/memories",
            files=[
                ("files", ("a.jpg", b"a", "image/jpeg")),
                ("files", ("b.jpg", b"b", "image/jpeg")),
            ],
        )
        urls = response.json()["profile"]["top_memories_url"]
        self.assertEqual(len(urls), 2)

        response = self.client.post("/api/dashboard/profile/memories/delete", json={"url": urls[0]})
        self.assertEqual(response.json()["profile"]["top_memories_url"], [urls[1]])
        self.assertEqual(len(get_storage_client().stored_objects), 1)

    def test_entries_are_scoped_to_their_owner(self):
        wish = self.client.post(
            "/api/dashboard/wishes", json={"title": "Scatter my ashes", "description": "At sea"}
        ).json()
        self.assertEqual(wish["message"]["text"], "Wish saved successfully.")
        wish_id = wish["entry"]["id"]

        other = self.new_client()
        self.sign_up(other, "b@x.com")
        self.assertEqual(other.get("/api/dashboard/wishes").json()["entries"], [])
        response = other.put(f"/api/dashboard/wishes/{wish_id}", json={"title": "Mine now"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"]["text"], "Wish not found.")
        self.assertEqual(other.delete(f"/api/dashboard/wishes/{wish_id}").status_code, 404)

        updated = self.client.put(
            f"/api/dashboard/wishes/{wish_id}", json={"title": "Scatter my ashes", "type": "voice"}
        ).json()
        self.assertEqual(updated["entry"]["type"], "voice")
        self.assertEqual(updated["message"]["text"], "Wish updated successfully.")

        self.assertEqual(
            self.client.delete(f"/api/dashboard/wishes/{wish_id}").json()["message"]["text"],
            "Wish deleted.",
        )
        self.assertEqual(self.client.get("/api/dashboard/wishes").json()["entries"], [])

    def test_nominee_permissions_default(self):
        body = self.client.post(
            "/api/dashboard/nominees",
            json={
                "nominee_name": "B",
                "nominee_email": "b@x.com",
                "permissions": {"viewDocuments": True},
            },
        ).json()
        self.assertEqual(body["message"]["text"], "Nominee added successfully.")
        self.assertEqual(
            body["entry"]["permissions"],
            {"viewWishes": True, "viewDocuments": True, "receiveLetters": True},
        )

    def test_letters_are_drafts(self):
        body = self.client.post(
            "/api/dashboard/letters",
            json={"recipient_name": "B", "title": "Hello", "content": "Dear B", "delivery_date": ""},
        ).json()
        self.assertEqual(body["entry"]["status"], "draft")
        self.assertIsNone(body["entry"]["delivery_date"])

    def test_document_vault(self):
        response = self.client.post(
            "/api/dashboard/documents",
            files={"file": ("will.pdf", b"%PDF-1.7", "application/pdf")},
        )
        self.assertEqual(response.status_code, 200, response.text)
        document = response.json()["document"]
        self.assertEqual(document["file_name"], "will.pdf")
        self.assertEqual(document["file_size"], 8)

        listed = self.client.get("/api/dashboard/documents").json()["documents"]
        self.assertEqual([doc["id"] for doc in listed], [document["id"]])

        download = self.client.get(f"/api/dashboard/documents/{document['id']}/download")
        self.assertEqual(download.content, b"%PDF-1.7")
        self.assertEqual(
            download.headers["content-disposition"], "attachment; filename*=UTF-8''will.pdf"
        )

        other = self.new_client()
        self.sign_up(other, "b@x.com")
        self.assertEqual(
            other.get(f"/api/dashboard/documents/{document['id']}/download").status_code, 404
        )

        self.client.delete(f"/api/dashboard/documents/{document['id']}")
        self.assertFalse(get_storage_client().exists(DOCUMENTS_BUCKET, document["storage_path"]))
        self.assertEqual(
            self.client.get(f"/api/dashboard/documents/{document['id']}/download").status_code,
            404,
        )

    def test_missing_documents_bucket(self):
        get_storage_client().buckets = (MEMORIES_BUCKET,)
        response = self.client.post(
            "/api/dashboard/documents", files={"file": ("will.pdf", b"x", "application/pdf")}
        )
        self.assertEqual(response.status_code, 500)
        self.assertIn('"documents" storage bucket is missing', response.json()["message"]["text"])

    def test_support_ticket(self):
        empty = self.client.post("/api/dashboard/support", json={"message": "  "})
        self.assertEqual(empty.status_code, 400)

        response = self.client.post("/api/dashboard/support", json={"message": "Help please"})
        self.assertEqual(response.status_code, 200)
        (ticket,) = get_db_client().support_tickets
        self.assertEqual(ticket["email"], "a@x.com")
        self.assertEqual(ticket["status"], "open")

    def test_change_password(self):
        wrong = self.client.post(
            "/api/dashboard/security/password",
            json={"current_password": "nope", "new_password": "x1y2z3", "confirm_password": "x1y2z3"},
        )
        self.assertEqual(
            wrong.json()["message"]["text"],
            "Error changing password: Current password is incorrect.",
        )

        response = self.client.post(
            "/api/dashboard/security/password",
            json={
                "current_password": "secret1",
                "new_password": "x1y2z3",
                "confirm_password": "x1y2z3",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/session").json()["view"], "dashboard")

        other = self.new_client()
        login = other.post("/api/auth/login", json={"email": "a@x.com", "password": "x1y2z3"})
        self.assertEqual(login.status_code, 200)

    def test_mfa_enroll_verify_and_disable(self):
        enrollment = self.client.post("/api/dashboard/security/mfa/enroll").json()
        factor_id = enrollment["factor_id"]

        code = get_identity_service().totp_codes[factor_id]
        wrong_code = "111111" if code == "000000" else "000000"

        bad = self.client.post(
            "/api/dashboard/security/mfa/verify",
            json={"factor_id": factor_id, "code": wrong_code},
        )
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(
            bad.json()["message"]["text"], "Verification failed: Invalid TOTP code entered"
        )

        ok = self.client.post(
            "/api/dashboard/security/mfa/verify", json={"factor_id": factor_id, "code": code}
        )
        self.assertEqual(ok.json()["message"]["text"], "2FA has been successfully enabled!")
        factors = self.client.get("/api/dashboard/security/mfa").json()["factors"]
        self.assertEqual([(f["id"], f["status"]) for f in factors], [(factor_id, "verified")])

        self.client.delete(f"/api/dashboard/security/mfa/{factor_id}")
        self.assertEqual(self.client.get("/api/dashboard/security/mfa").json()["factors"], [])

    def test_sign_out_other_devices(self):
        other = self.new_client()
        other.post("/api/auth/login", json={"email": "a@x.com", "password": "secret1"})

        self.client.post("/api/dashboard/security/sign-out-others")

        identity = get_identity_service()
        self.assertEqual(len(identity.access_tokens), 1)
        self.assertIsNotNone(self.client.get("/api/session").json()["user"])

    def test_delete_account(self):
        wrong = self.client.post(
            "/api/dashboard/security/delete-account", json={"password": "nope"}
        )
        self.assertEqual(
            wrong.json()["message"]["text"], "Account deletion failed: Password is incorrect."
        )

        response = self.client.post(
            "/api/dashboard/security/delete-account", json={"password": "secret1"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([call[0] for call in get_function_client().calls], ["delete-user"])
        session = self.client.get("/api/session").json()
        self.assertEqual(session["view"], "home")
        self.assertIsNone(session["user"])


class PublicApiTests(ApiTestCase):
    def test_cascade_cards(self):
        db = get_db_client()
        db.upsert_patron(
            {
                "id": "p1",
                "full_name": "Asha",
                "service_grade": "2",
                "memorable_deeds": "Fed the street dogs every single morning for twenty years",
                "top_memories_url": ["https://cdn.test/p1/a.jpg"],
            }
        )
        db.upsert_patron({"id": "p2", "full_name": "Ravi"})

        cards = self.client.get("/api/cascade").json()["cards"]
        self.assertEqual(len(cards), 2)
        asha = next(card for card in cards if card["id"] == "p1")
        self.assertEqual(asha["badge"], "❤️ Kind Heart")
        self.assertEqual(asha["photo"], "https://cdn.test/p1/a.jpg")
        self.assertEqual(
            asha["wishes"],
            ["Make small social contributions.", "Fed the street dogs every single morning for twent..."],
        )
        ravi = next(card for card in cards if card["id"] == "p2")
        self.assertEqual(ravi["photo"], "https://i.pravatar.cc/150?u=p2")
        self.assertEqual(ravi["badge"], "💖 Legacy Maker")

        found = self.client.get("/api/cascade", params={"search": "asha"}).json()["cards"]
        self.assertEqual([card["id"] for card in found], ["p1"])

    @patch("lastwishes.routes.fetch_cascade", side_effect=OperationCancelled())
    def test_cancelled_cascade_is_not_an_error(self, mock_fetch):
        response = self.client.get("/api/cascade")
        self.assertEqual(response.status_code, 499)
        self.assertEqual(response.content, b"")
        mock_fetch.assert_called_once()

    def test_client_disconnect_cancels_cascade_fetch(self):
        def wait_for_cancel(db, *, search, limit, cancel):
            if cancel.wait(timeout=5):
                raise OperationCancelled()
            return []

        with patch.object(Request, "is_disconnected", AsyncMock(return_value=True)), patch(
            "lastwishes.routes.fetch_cascade", side_effect=wait_for_cancel
        ):
            response = self.client.get("/api/cascade")

        self.assertEqual(response.status_code, 499)
        self.assertNotIn(b"message", response.content)

    @patch("lastwishes.routes.fetch_cascade", side_effect=BackendError("permission denied"))
    def test_cascade_backend_failure(self, mock_fetch):
        response = self.client.get("/api/cascade")
        self.assertEqual(response.status_code, 502)
        self.assertTrue(
            response.json()["message"]["text"].startswith("Could not fetch patron data.")
        )

    def test_plans(self):
        plans = self.client.get("/api/payments/plans").json()["plans"]
        self.assertEqual([plan["id"] for plan in plans], ["basic", "standard", "premium"])
        self.assertEqual(plans[1]["price"], {"monthly": 299, "yearly": 2999})

    def test_checkout_requires_key(self):
        self.sign_up(self.client, "a@x.com")
        response = self.client.post("/api/payments/checkout", json={"plan_id": "standard"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.json()["message"]["text"],
            "Configuration Error: Razorpay Key ID is missing.",
        )

    @patch("lastwishes.routes.get_settings")
    def test_checkout_options(self, mock_settings):
        mock_settings.return_value = get_settings().model_copy(
            update={"razorpay_key_id": "rzp_test_key"}
        )
        self.sign_up(self.client, "a@x.com", name="A")
        options = self.client.post(
            "/api/payments/checkout", json={"plan_id": "standard"}
        ).json()["options"]
        self.assertEqual(options["key"], "rzp_test_key")
        self.assertEqual(options["amount"], 299900)
        self.assertEqual(options["currency"], "INR")
        self.assertEqual(options["description"], "Standard Plan Subscription")
        self.assertTrue(options["order_id"].startswith("order_"))
        self.assertEqual(options["prefill"], {"name": "A", "email": "a@x.com"})

        monthly = self.client.post(
            "/api/payments/checkout", json={"plan_id": "premium", "billing_cycle": "monthly"}
        ).json()["options"]
        self.assertEqual(monthly["amount"], 79900)

        free = self.client.post("/api/payments/checkout", json={"plan_id": "basic"})
        self.assertEqual(free.status_code, 400)

    def test_payment_verification(self):
        self.sign_up(self.client, "a@x.com")
        signature = get_function_client().sign("order_1", "pay_1")

        ok = self.client.post(
            "/api/payments/verify",
            json={
                "plan_id": "standard",
                "razorpay_payment_id": "pay_1",
                "razorpay_order_id": "order_1",
                "razorpay_signature": signature,
            },
        ).json()
        self.assertEqual(ok["message"]["text"], "Payment verified! Welcome to the Standard plan.")

        bad = self.client.post(
            "/api/payments/verify",
            json={
                "plan_id": "standard",
                "razorpay_payment_id": "pay_2",
                "razorpay_order_id": "order_2",
                "razorpay_signature": "forged",
            },
        )
        self.assertEqual(bad.status_code, 200)
        self.assertEqual(bad.json()["message"]["type"], "warning")
        self.assertIn("Payment ID: pay_2", bad.json()["message"]["text"])

    def test_admin_patrons(self):
        admin = self.new_client()
        admin_id = self.sign_up(admin, "admin@x.com")["user"]["id"]
        get_db_client().set_user_role(admin_id, "admin")
        admin.post("/api/auth/logout")
        admin.post("/api/auth/login", json={"email": "admin@x.com", "password": "secret1"})

        self.sign_up(self.client, "a@x.com")
        self.client.post("/api/pledge", data=PLEDGE)

        denied = self.client.get("/api/admin/patrons")
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["message"]["text"], "Admin privileges are required.")

        session = admin.get("/api/session").json()
        self.assertTrue(session["is_admin"])
        patrons = admin.get("/api/admin/patrons").json()["patrons"]
        self.assertEqual([patron["email"] for patron in patrons], ["a@x.com"])
        self.assertEqual(
            admin.get("/api/admin/patrons", params={"search": "zzz"}).json()["patrons"], []
        )


if __name__ == "__main__":
    unittest.main()
