import shutil
import tempfile
import unittest
from pathlib import Path
import sys
from unittest.mock import patch

from fastapi import HTTPException
from fastapi import Response
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


class AuthProfileTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.original_seed_offers = main.SEED_DEFAULT_OFFERS
        main.SEED_DEFAULT_OFFERS = False
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        main.SEED_DEFAULT_OFFERS = cls.original_seed_offers
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.init_db()

    def _register(self, **overrides) -> main.AuthUserOut:
        values = {
            "email": "Claire.Martin@Example.fr",
            "password": "secret1",
            "confirm_password": "secret1",
            "first_name": "Claire",
            "last_name": "Martin",
            "phone": "0600000000",
            "company_name": "Martin SARL",
        }
        values.update(overrides)
        return main.register(main.RegisterIn(**values), response=Response())

    def _profile_count(self, email: str) -> int:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) AS cnt FROM Profile WHERE email = ?", (email,))
            return cur.fetchone()["cnt"]

    def test_register_with_mismatched_passwords_creates_no_profile(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            self._register(confirm_password="secret2")
        self.assertEqual(exc.exception.status_code, 400)
        self.assertEqual(exc.exception.detail, "Passwords do not match")
        self.assertEqual(self._profile_count("claire.martin@example.fr"), 0)

    def test_register_rejects_short_password_and_staff_roles(self) -> None:
        with self.assertRaises(HTTPException) as short_exc:
            self._register(password="abc", confirm_password="abc")
        self.assertEqual(short_exc.exception.status_code, 400)

        with self.assertRaises(HTTPException) as role_exc:
            self._register(role="admin")
        self.assertEqual(role_exc.exception.status_code, 400)
        self.assertEqual(self._profile_count("claire.martin@example.fr"), 0)

    def test_register_creates_client_profile_and_session_cookie(self) -> None:
        response = Response()
        user = main.register(
            main.RegisterIn(
                email="Claire.Martin@Example.fr",
                password="secret1",
                confirm_password="secret1",
                first_name="Claire",
                last_name="Martin",
            ),
            response=response,
        )

        self.assertEqual(user.email, "claire.martin@example.fr")
        self.assertEqual(user.role, "client")
        self.assertIn(f"{main.SESSION_COOKIE_NAME}=", response.headers.get("set-cookie", ""))

        with self.assertRaises(HTTPException) as duplicate_exc:
            self._register()
        self.assertEqual(duplicate_exc.exception.status_code, 400)

        auth = main.login_with_password(
            main.AuthLoginIn(email="claire.martin@example.fr", password="secret1"),
            response=Response(),
        )
        self.assertEqual(auth.id, user.id)

    def test_register_allows_agent_role(self) -> None:
        user = self._register(email="agent@example.fr", role="agent")
        self.assertEqual(user.role, "agent")

    def test_login_rejects_wrong_password(self) -> None:
        self._register()
        with self.assertRaises(HTTPException) as exc:
            main.login_with_password(
                main.AuthLoginIn(email="claire.martin@example.fr", password="wrong-pass"),
                response=Response(),
            )
        self.assertEqual(exc.exception.status_code, 401)

    def test_default_admin_profile_is_seeded(self) -> None:
        auth = main.login_with_password(
            main.AuthLoginIn(email=main.DEFAULT_ADMIN_EMAIL, password=main.DEFAULT_ADMIN_PASSWORD),
            response=Response(),
        )
        self.assertEqual(auth.role, "admin")

    def test_profile_password_change_keeps_current_session_only(self) -> None:
        user = self._register()
        with main.get_db() as conn:
            main.create_auth_session(conn, user.id)
            cur = conn.cursor()
            cur.execute("SELECT id FROM AuthSession WHERE user_id = ? ORDER BY rowid ASC", (user.id,))
            session_ids = [row["id"] for row in cur.fetchall()]
            profile = dict(main.fetch_profile(conn, user.id))
        self.assertEqual(len(session_ids), 2)
        session_user = {**profile, "session_id": session_ids[0]}

        with patch.object(main, "get_session_user", return_value=session_user):
            updated = main.update_profile(
                main.ProfileUpdateIn(
                    first_name="Claire-Anne",
                    theme="dark",
                    email_notifications=True,
                    password="newsecret",
                    confirm_password="newsecret",
                ),
                request=object(),
            )

        self.assertEqual(updated.first_name, "Claire-Anne")
        self.assertEqual(updated.theme, "dark")
        self.assertTrue(updated.email_notifications)
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM AuthSession WHERE user_id = ?", (user.id,))
            remaining = [row["id"] for row in cur.fetchall()]
        self.assertEqual(remaining, [session_ids[0]])

        auth = main.login_with_password(
            main.AuthLoginIn(email="claire.martin@example.fr", password="newsecret"),
            response=Response(),
        )
        self.assertEqual(auth.id, user.id)

    def test_profile_update_rejects_unknown_theme_and_mismatched_passwords(self) -> None:
        user = self._register()
        with main.get_db() as conn:
            profile = dict(main.fetch_profile(conn, user.id))

        with patch.object(main, "get_session_user", return_value=profile):
            with self.assertRaises(HTTPException) as theme_exc:
                main.update_profile(main.ProfileUpdateIn(theme="neon"), request=object())
            with self.assertRaises(HTTPException) as password_exc:
                main.update_profile(
                    main.ProfileUpdateIn(password="newsecret", confirm_password="other"),
                    request=object(),
                )
        self.assertEqual(theme_exc.exception.status_code, 400)
        self.assertEqual(password_exc.exception.status_code, 400)

    def test_user_management_requires_admin(self) -> None:
        agent = self._register(email="agent@example.fr", role="agent")
        with main.get_db() as conn:
            agent_profile = dict(main.fetch_profile(conn, agent.id))

        payload = main.UserIn(
            first_name="Paul",
            last_name="Durand",
            email="paul@example.fr",
            role="responsable_plateau",
            password="plateau1",
        )
        with patch.object(main, "get_session_user", return_value=agent_profile):
            with self.assertRaises(HTTPException) as exc:
                main.create_user(payload, request=object())
        self.assertEqual(exc.exception.status_code, 403)

        with patch.object(main, "get_session_user", return_value={"id": "admin-session", "role": "admin"}):
            created = main.create_user(payload, request=object())
            updated = main.update_user(created.id, main.UserUpdate(role="agent"), request=object())
        self.assertEqual(created.role, "responsable_plateau")
        self.assertEqual(updated.role, "agent")

    def test_session_cookie_round_trip_over_http(self) -> None:
        client = TestClient(main.app)
        anonymous = client.get("/api/auth/me")
        self.assertEqual(anonymous.status_code, 401)

        registered = client.post(
            "/api/auth/register",
            json={
                "email": "Http.Client@Example.fr",
                "password": "secret12",
                "confirm_password": "secret12",
                "first_name": "Hugo",
                "last_name": "Client",
            },
        )
        self.assertEqual(registered.status_code, 200)
        self.assertIn(main.SESSION_COOKIE_NAME, registered.cookies)

        me = client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["email"], "http.client@example.fr")
        self.assertEqual(me.json()["role"], "client")

        self.assertEqual(client.post("/api/auth/logout").status_code, 200)
        self.assertEqual(client.get("/api/auth/me").status_code, 401)


if __name__ == "__main__":
    unittest.main()
