import io
import shutil
import tempfile
import unittest
from pathlib import Path
import sys
from unittest.mock import patch
from urllib import error as urlerror

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


def stats_day(date: str, **metrics) -> dict:
    return {"date": date, "stats": [{"metrics": metrics}]}


class EmailStatsTests(unittest.TestCase):
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
        self.manager = {"id": "manager-1", "role": "responsable_plateau", "email": "plateau@example.fr"}

    def test_summary_rates_are_relative_to_delivered(self) -> None:
        rows = [
            stats_day("2026-03-01", requests=100, delivered=95, opens=30, clicks=6, bounces=3),
            stats_day("2026-03-02", requests=50, delivered=45, opens=20, clicks=4, bounces=2),
        ]
        summary = main.calculate_summary_stats(rows)
        self.assertEqual(summary["total_sent"], 150)
        self.assertEqual(summary["total_delivered"], 140)
        self.assertEqual(summary["total_opens"], 50)
        self.assertEqual(summary["total_clicks"], 10)
        self.assertEqual(summary["open_rate"], 35.71)
        self.assertEqual(summary["click_rate"], 7.14)
        self.assertEqual(summary["bounce_rate"], 6.67)

    def test_summary_rates_are_zero_without_deliveries(self) -> None:
        summary = main.calculate_summary_stats([stats_day("2026-03-01", requests=12, delivered=0)])
        self.assertEqual(summary["total_sent"], 12)
        self.assertEqual(summary["open_rate"], 0.0)
        self.assertEqual(summary["click_rate"], 0.0)
        self.assertEqual(summary["bounce_rate"], 0.0)

    def test_chart_sums_every_category_of_a_day(self) -> None:
        day = {
            "date": "2026-03-01",
            "stats": [
                {"name": "campaign-a", "metrics": {"delivered": 10, "opens": 4}},
                {"name": "campaign-b", "metrics": {"delivered": 5, "opens": 1, "clicks": 1}},
            ],
        }
        chart = main.format_stats_for_charts([day])
        self.assertEqual(
            chart,
            [{"date": "2026-03-01", "delivered": 15, "opens": 5, "clicks": 1, "bounces": 0}],
        )

    def test_unknown_stats_type_uses_global_endpoint(self) -> None:
        with patch.object(main, "get_session_user", return_value=self.manager), patch.object(
            main,
            "sendgrid_api_request",
            return_value={"results": [stats_day("2026-03-01", requests=4, delivered=4, opens=2)]},
        ) as api_mock:
            stats = main.get_email_stats(
                request=object(),
                stats_type="unknown",
                start_date="2026-03-01",
                categories="a, b",
            )

        method, path = api_mock.call_args[0]
        query = api_mock.call_args[1]["query"]
        self.assertEqual((method, path), ("GET", "/v3/stats"))
        self.assertNotIn("categories", query)
        self.assertEqual(query["aggregated_by"], "day")
        self.assertEqual(stats.stats_type, "global")
        self.assertEqual(stats.summary["open_rate"], 50.0)

    def test_campaign_stats_filter_on_campaign_category(self) -> None:
        with patch.object(main, "get_session_user", return_value=self.manager):
            campaign = main.create_campaign(main.CampaignIn(name="Relance été"), request=object())
            with patch.object(main, "sendgrid_api_request", return_value={"results": []}) as api_mock:
                stats = main.get_campaign_email_stats(campaign.id, request=object())

        method, path = api_mock.call_args[0]
        query = api_mock.call_args[1]["query"]
        self.assertEqual(path, "/v3/stats/categories")
        self.assertEqual(query["categories"], [campaign.id])
        self.assertEqual(stats.rows, [])
        self.assertEqual(stats.summary["total_sent"], 0)

    def test_email_stats_require_manager_role(self) -> None:
        agent = {"id": "agent-1", "role": "agent", "email": "agent@example.fr"}
        with patch.object(main, "get_session_user", return_value=agent):
            with self.assertRaises(HTTPException) as exc:
                main.get_email_stats(request=object())
        self.assertEqual(exc.exception.status_code, 403)

    def test_missing_api_key_is_bad_gateway(self) -> None:
        with patch.dict(main.os.environ, {"SENDGRID_API_KEY": ""}):
            with self.assertRaises(HTTPException) as exc:
                main.sendgrid_api_request("GET", "/v3/stats")
        self.assertEqual(exc.exception.status_code, 502)

    def test_sendgrid_error_message_is_surfaced(self) -> None:
        http_error = urlerror.HTTPError(
            "https://api.sendgrid.com/v3/stats",
            403,
            "Forbidden",
            {},
            io.BytesIO(b'{"errors": [{"message": "access forbidden"}]}'),
        )
        with patch.dict(main.os.environ, {"SENDGRID_API_KEY": "SG.test"}), patch.object(
            main.urlrequest, "urlopen", side_effect=http_error
        ):
            with self.assertRaises(HTTPException) as exc:
                main.sendgrid_api_request("GET", "/v3/stats")
        self.assertEqual(exc.exception.status_code, 502)
        self.assertEqual(exc.exception.detail, "SendGrid API error (403): access forbidden")

    def test_activity_limit_is_clamped(self) -> None:
        with patch.object(main, "get_session_user", return_value=self.manager), patch.object(
            main, "sendgrid_api_request", return_value={"messages": [{"msg_id": "m1"}]}
        ) as api_mock:
            activity = main.get_email_activity(request=object(), limit=5000)

        self.assertEqual(api_mock.call_args[1]["query"]["limit"], 1000)
        self.assertEqual(activity["messages"], [{"msg_id": "m1"}])


if __name__ == "__main__":
    unittest.main()
