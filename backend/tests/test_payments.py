import shutil
import sqlite3
import tempfile
import unittest
from pathlib import Path
import sys
import uuid
from typing import Any, Dict
from unittest.mock import patch

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


class PaymentTests(unittest.TestCase):
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
        self.agent = self._insert_profile("agent-1", "agent@example.fr", "agent")
        self.client = self._insert_profile("client-1", "client@example.fr", "client")

    def _insert_profile(self, user_id: str, email: str, role: str) -> Dict[str, Any]:
        now = main.now_iso()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO Profile (id, email, first_name, last_name, role, email_notifications, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, email, "Test", role.title(), role, 0, now, now),
            )
            conn.commit()
            return dict(main.fetch_profile(conn, user_id))

    def _insert_quote(self, *, status: str = "approved", total: float = 160.0, payment_status: str = "Non Payé") -> str:
        quote_id = str(uuid.uuid4())
        now = main.now_iso()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO Quote (
                    id, offer_plate_id, agent_id, client_id, status, payment_status, total_amount,
                    payment_link_url, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (quote_id, None, self.agent["id"], self.client["id"], status, payment_status, total, None, now, now),
            )
            conn.commit()
        return quote_id

    def _fetch_quote(self, quote_id: str):
        with main.get_db() as conn:
            return main.fetch_quote(conn, quote_id)

    def _notification_payload(self, **overrides) -> Dict[str, Any]:
        payload = {
            "paymentStatus": "SUCCESS",
            "paymentMethod": "MVOLA",
            "amount": 16000,
            "fee": 0,
            "clientName": "Claire Martin",
            "description": "Plaquette d'offres",
            "merchantPaymentReference": "MPR-1",
            "paymentReference": "PR-1",
            "notificationToken": "token-1",
        }
        payload.update(overrides)
        return payload

    def test_payment_link_amount_is_in_centimes(self) -> None:
        quote_id = self._insert_quote(total=160.5)
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main,
            "payment_link_api_request",
            return_value={"data": {"linkUrl": "https://pay.example.com/l/abc"}},
        ) as api_mock:
            link = main.create_quote_payment_link(quote_id, request=object())

        body = api_mock.call_args[0][0]
        self.assertEqual(body["amount"], 16050)
        self.assertEqual(body["clientEmail"], "client@example.fr")
        self.assertEqual(body["methods"], main.PAYMENT_LINK_METHODS)
        self.assertIn(quote_id, body["successUrl"])
        self.assertEqual(link.amount, 16050)
        self.assertEqual(link.link_url, "https://pay.example.com/l/abc")
        self.assertEqual(self._fetch_quote(quote_id)["payment_link_url"], "https://pay.example.com/l/abc")

    def test_payment_link_requires_approved_unpaid_quote(self) -> None:
        pending_id = self._insert_quote(status="pending")
        paid_id = self._insert_quote(payment_status=main.PAYMENT_STATUS_PAID)
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main, "payment_link_api_request", return_value={}
        ) as api_mock:
            with self.assertRaises(HTTPException) as pending_exc:
                main.create_quote_payment_link(pending_id, request=object())
            with self.assertRaises(HTTPException) as paid_exc:
                main.create_quote_payment_link(paid_id, request=object())
        self.assertEqual(pending_exc.exception.status_code, 400)
        self.assertEqual(paid_exc.exception.status_code, 400)
        api_mock.assert_not_called()

    def test_payment_api_error_maps_to_bad_gateway(self) -> None:
        quote_id = self._insert_quote()
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main,
            "payment_link_api_request",
            side_effect=HTTPException(status_code=502, detail="Invalid response from payment API: <html>"),
        ):
            with self.assertRaises(HTTPException) as exc:
                main.create_quote_payment_link(quote_id, request=object())
        self.assertEqual(exc.exception.status_code, 502)
        self.assertIsNone(self._fetch_quote(quote_id)["payment_link_url"])

    def test_send_quote_email_creates_link_and_marks_sent(self) -> None:
        quote_id = self._insert_quote()
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main,
            "payment_link_api_request",
            return_value={"linkUrl": "https://pay.example.com/l/xyz"},
        ), patch.object(main, "send_sendgrid_email", return_value=None) as send_mock:
            result = main.send_quote_email(quote_id, request=object())

        to_email, subject, html = send_mock.call_args[0]
        self.assertEqual(to_email, "client@example.fr")
        self.assertEqual(subject, f"Votre devis #{quote_id[:8]} est approuvé")
        self.assertIn("https://pay.example.com/l/xyz", html)
        self.assertEqual(result["quote_status"], "sent")
        self.assertEqual(self._fetch_quote(quote_id)["status"], "sent")

    def test_webhook_rejects_missing_fields(self) -> None:
        payload = self._notification_payload()
        payload.pop("notificationToken")
        payload["paymentReference"] = " "
        with self.assertRaises(HTTPException) as exc:
            main.receive_payment_notification(payload)
        self.assertEqual(exc.exception.status_code, 400)
        self.assertIn("paymentReference", exc.exception.detail)
        self.assertIn("notificationToken", exc.exception.detail)

    def test_success_webhook_marks_quote_paid(self) -> None:
        quote_id = self._insert_quote()
        result = main.receive_payment_notification(self._notification_payload(quoteId=quote_id))

        self.assertTrue(result["success"])
        self.assertTrue(result["processed"])
        self.assertEqual(self._fetch_quote(quote_id)["payment_status"], main.PAYMENT_STATUS_PAID)
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT processed, fee FROM PaymentNotification WHERE id = ?", (result["notification_id"],))
            row = cur.fetchone()
            self.assertEqual(row["processed"], 1)
            self.assertEqual(row["fee"], 0)
            cur.execute("SELECT title FROM Notification WHERE user_id = ?", (self.agent["id"],))
            self.assertEqual(cur.fetchone()["title"], "Paiement reçu")

    def test_webhook_rolls_back_quote_when_processing_fails(self) -> None:
        quote_id = self._insert_quote()
        with patch.object(main, "create_notification", side_effect=sqlite3.OperationalError("database is locked")):
            result = main.receive_payment_notification(self._notification_payload(quoteId=quote_id))

        self.assertTrue(result["success"])
        self.assertFalse(result["processed"])
        self.assertEqual(self._fetch_quote(quote_id)["payment_status"], main.PAYMENT_STATUS_UNPAID)
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT processed FROM PaymentNotification WHERE id = ?", (result["notification_id"],))
            self.assertEqual(cur.fetchone()["processed"], 0)

    def test_failed_or_unmatched_webhooks_are_stored_without_processing(self) -> None:
        quote_id = self._insert_quote()
        failed = main.receive_payment_notification(
            self._notification_payload(quoteId=quote_id, paymentStatus="FAILED")
        )
        unmatched = main.receive_payment_notification(self._notification_payload(quoteId="missing-quote"))

        self.assertFalse(failed["processed"])
        self.assertFalse(unmatched["processed"])
        self.assertEqual(self._fetch_quote(quote_id)["payment_status"], main.PAYMENT_STATUS_UNPAID)
        with patch.object(main, "get_session_user", return_value={"id": "admin-1", "role": "admin"}):
            history = main.list_payment_history(request=object())
        self.assertEqual(len(history), 2)

    def test_payment_callback(self) -> None:
        quote_id = self._insert_quote()
        ignored = main.payment_callback(quote_id, main.PaymentCallbackIn(status="failed"))
        self.assertEqual(ignored["status"], "ignored")
        self.assertEqual(self._fetch_quote(quote_id)["payment_status"], main.PAYMENT_STATUS_UNPAID)

        with self.assertRaises(HTTPException) as exc:
            main.payment_callback(quote_id, main.PaymentCallbackIn())
        self.assertEqual(exc.exception.status_code, 400)

        paid = main.payment_callback(quote_id, main.PaymentCallbackIn(status="SUCCESS"))
        self.assertEqual(paid["payment_status"], main.PAYMENT_STATUS_PAID)
        self.assertEqual(self._fetch_quote(quote_id)["payment_status"], main.PAYMENT_STATUS_PAID)

    def test_admin_can_override_payment_status(self) -> None:
        quote_id = self._insert_quote()
        with patch.object(main, "get_session_user", return_value=self.agent):
            with self.assertRaises(HTTPException) as role_exc:
                main.update_quote_payment_status(
                    quote_id, main.QuotePaymentStatusIn(payment_status="Payé"), request=object()
                )
        self.assertEqual(role_exc.exception.status_code, 403)

        with patch.object(main, "get_session_user", return_value={"id": "admin-1", "role": "admin"}):
            updated = main.update_quote_payment_status(
                quote_id, main.QuotePaymentStatusIn(payment_status="Payé"), request=object()
            )
            with self.assertRaises(HTTPException) as value_exc:
                main.update_quote_payment_status(
                    quote_id, main.QuotePaymentStatusIn(payment_status="Remboursé"), request=object()
                )
        self.assertEqual(updated.payment_status, main.PAYMENT_STATUS_PAID)
        self.assertEqual(value_exc.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()
