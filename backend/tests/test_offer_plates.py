import shutil
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


class OfferPlateTests(unittest.TestCase):
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
        self.agent = self._insert_profile("agent-1", "agent@example.fr", "agent", "Alice", "Agent")
        self.client = self._insert_profile("client-1", "client@example.fr", "client", "Claire", "Martin")
        self.offer_id = self._insert_offer("Mutuelle Santé Pro", 30.0, 100.0)

    def _insert_profile(self, user_id: str, email: str, role: str, first_name: str, last_name: str) -> Dict[str, Any]:
        now = main.now_iso()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO Profile (id, email, first_name, last_name, role, email_notifications, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, email, first_name, last_name, role, 0, now, now),
            )
            conn.commit()
            return dict(main.fetch_profile(conn, user_id))

    def _insert_offer(self, name: str, price_monthly: float, setup_fee: float) -> str:
        offer_id = str(uuid.uuid4())
        now = main.now_iso()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO Offer (
                    id, name, description, category, image_url, price_monthly, setup_fee,
                    is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (offer_id, name, "Couverture complète", "Santé", None, price_monthly, setup_fee, 1, now, now),
            )
            conn.commit()
        return offer_id

    def _create_plate(self, **overrides) -> main.OfferPlateDetailOut:
        values = {
            "name": "Pack Santé",
            "client_id": self.client["id"],
            "items": [main.OfferPlateItemIn(offer_id=self.offer_id, quantity=2)],
        }
        values.update(overrides)
        with patch.object(main, "get_session_user", return_value=self.agent):
            return main.create_offer_plate(main.OfferPlateCreate(**values), request=object())

    def _notifications_for(self, user_id: str):
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM Notification WHERE user_id = ? ORDER BY created_at ASC", (user_id,))
            return cur.fetchall()

    def test_create_from_cart_builds_folder_and_clears_cart(self) -> None:
        with patch.object(main, "get_session_user", return_value=self.agent):
            main.add_cart_item(main.CartItemIn(offer_id=self.offer_id, quantity=3), request=object())
            plate = main.create_offer_plate(
                main.OfferPlateCreate(name="Pack Santé", client_id=self.client["id"]),
                request=object(),
            )
            cart = main.get_cart(request=object())

        self.assertEqual(plate.status, "draft")
        self.assertEqual(len(plate.items), 1)
        self.assertEqual(plate.items[0].quantity, 3)
        self.assertEqual(plate.totals["monthly_total"], 90.0)
        self.assertEqual(plate.totals["setup_total"], 300.0)
        self.assertEqual(cart.items, [])
        with main.get_db() as conn:
            folder = main.fetch_folder(conn, plate.folder_id)
        self.assertEqual(folder["name"], "Dossier pour Pack Santé")
        self.assertEqual(folder["client_id"], self.client["id"])
        self.assertEqual(folder["agent_id"], self.agent["id"])

    def test_create_requires_items_and_a_client(self) -> None:
        with self.assertRaises(HTTPException) as empty_exc:
            self._create_plate(items=None)
        self.assertEqual(empty_exc.exception.status_code, 400)

        with self.assertRaises(HTTPException) as client_exc:
            self._create_plate(client_id=self.agent["id"])
        self.assertEqual(client_exc.exception.status_code, 404)

        with patch.object(main, "get_session_user", return_value=self.client):
            with self.assertRaises(HTTPException) as role_exc:
                main.create_offer_plate(
                    main.OfferPlateCreate(name="Pack", client_id=self.client["id"], items=[]),
                    request=object(),
                )
        self.assertEqual(role_exc.exception.status_code, 403)

    def test_email_failure_does_not_block_creation(self) -> None:
        with patch.object(
            main,
            "send_offer_plate_email",
            side_effect=HTTPException(status_code=502, detail="SendGrid API error (500): boom"),
        ) as send_mock:
            plate = self._create_plate(send_email=True)

        send_mock.assert_called_once()
        self.assertEqual(plate.status, "sent")
        self.assertEqual(plate.sent_method, "email")
        self.assertIsNotNone(plate.sent_at)
        notifications = self._notifications_for(self.client["id"])
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0]["title"], "Nouvelle plaquette d'offres")

    def test_client_cannot_see_drafts_and_marks_sent_plate_viewed(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.client):
            with self.assertRaises(HTTPException) as draft_exc:
                main.get_offer_plate(plate.id, request=object())
            self.assertEqual(main.list_offer_plates(request=object()), [])
        self.assertEqual(draft_exc.exception.status_code, 404)

        with patch.object(main, "get_session_user", return_value=self.agent):
            sent = main.send_offer_plate(plate.id, main.OfferPlateSendIn(), request=object())
        self.assertEqual(sent.status, "sent")
        self.assertEqual(sent.sent_method, "platform")

        with patch.object(main, "get_session_user", return_value=self.client):
            viewed = main.get_offer_plate(plate.id, request=object())
        self.assertEqual(viewed.status, "viewed")

    def test_email_send_failure_keeps_plate_unsent(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main,
            "sendgrid_api_request",
            side_effect=HTTPException(status_code=502, detail="SendGrid API key is not configured"),
        ):
            with self.assertRaises(HTTPException) as exc:
                main.send_offer_plate(plate.id, main.OfferPlateSendIn(method="email"), request=object())
        self.assertEqual(exc.exception.status_code, 502)
        with main.get_db() as conn:
            self.assertEqual(main.fetch_offer_plate(conn, plate.id)["status"], "draft")

    def test_email_send_uses_offer_plate_subject(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.agent), patch.object(
            main, "sendgrid_api_request", return_value={}
        ) as api_mock:
            sent = main.send_offer_plate(plate.id, main.OfferPlateSendIn(method="email"), request=object())

        self.assertEqual(sent.status, "sent")
        method, path = api_mock.call_args[0]
        body = api_mock.call_args[1]["body"]
        self.assertEqual((method, path), ("POST", "/v3/mail/send"))
        self.assertEqual(body["subject"], "Votre plaquette d'offres : Pack Santé")
        self.assertEqual(body["personalizations"][0]["to"][0]["email"], "client@example.fr")
        self.assertIn("Mutuelle Santé Pro (x2)", body["content"][0]["value"])
        self.assertIn("60,00 €/mois", body["content"][0]["value"])
        self.assertIn("Frais d'installation : 200,00 €", body["content"][0]["value"])

    def test_items_are_locked_once_a_quote_exists(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.agent):
            updated = main.update_offer_plate_item(
                plate.id,
                plate.items[0].id,
                main.OfferPlateItemUpdate(quantity=5),
                request=object(),
            )
            self.assertEqual(updated.items[0].quantity, 5)
            quote = main.create_quote_from_offer_plate(plate.id, request=object())
            self.assertEqual(quote.status, "pending")

            with self.assertRaises(HTTPException) as replace_exc:
                main.replace_offer_plate_items(
                    plate.id,
                    main.OfferPlateItemsIn(items=[main.OfferPlateItemIn(offer_id=self.offer_id)]),
                    request=object(),
                )
            with self.assertRaises(HTTPException) as second_quote_exc:
                main.create_quote_from_offer_plate(plate.id, request=object())
            with self.assertRaises(HTTPException) as delete_exc:
                main.delete_offer_plate(plate.id, request=object())
            without_quote = main.list_offer_plates_without_quote(request=object())

        self.assertEqual(replace_exc.exception.status_code, 409)
        self.assertEqual(second_quote_exc.exception.status_code, 409)
        self.assertEqual(delete_exc.exception.status_code, 409)
        self.assertEqual(without_quote, [])

    def test_other_agents_cannot_open_plate(self) -> None:
        plate = self._create_plate()
        other_agent = self._insert_profile("agent-2", "agent2@example.fr", "agent", "Bruno", "Autre")
        with patch.object(main, "get_session_user", return_value=other_agent):
            with self.assertRaises(HTTPException) as exc:
                main.get_offer_plate(plate.id, request=object())
            self.assertEqual(main.list_offer_plates(request=object()), [])
        self.assertEqual(exc.exception.status_code, 403)

    def test_add_items_merges_existing_offer_lines(self) -> None:
        plate = self._create_plate()
        second_offer = self._insert_offer("Assistance", 9.0, 0.0)
        with patch.object(main, "get_session_user", return_value=self.agent):
            updated = main.add_offer_plate_items(
                plate.id,
                main.OfferPlateItemsIn(
                    items=[
                        main.OfferPlateItemIn(offer_id=self.offer_id, quantity=1),
                        main.OfferPlateItemIn(offer_id=second_offer, quantity=1),
                    ]
                ),
                request=object(),
            )
            trimmed = main.remove_offer_plate_item(plate.id, updated.items[1].id, request=object())

        self.assertEqual([item.quantity for item in updated.items], [3, 1])
        self.assertEqual(len(trimmed.items), 1)

    def test_client_cannot_download_draft_plate_pdf(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.client):
            with self.assertRaises(HTTPException) as exc:
                main.download_offer_plate_pdf(plate.id, request=object())
        self.assertEqual(exc.exception.status_code, 404)
        self.assertFalse((self.test_uploads_dir / "offer-plates" / f"{plate.id}.pdf").exists())

        with patch.object(main, "get_session_user", return_value=self.agent):
            main.send_offer_plate(plate.id, main.OfferPlateSendIn(), request=object())
        with patch.object(main, "get_session_user", return_value=self.client):
            response = main.download_offer_plate_pdf(plate.id, request=object())
        self.assertTrue(Path(response.path).read_bytes().startswith(b"%PDF"))

    def test_plate_pdf_is_rendered(self) -> None:
        plate = self._create_plate()
        with patch.object(main, "get_session_user", return_value=self.agent):
            response = main.download_offer_plate_pdf(plate.id, request=object())
        pdf_path = Path(response.path)
        self.assertTrue(pdf_path.exists())
        self.assertTrue(pdf_path.read_bytes().startswith(b"%PDF"))


if __name__ == "__main__":
    unittest.main()
