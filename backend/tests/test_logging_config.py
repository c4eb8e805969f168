import json
import logging
import tempfile
import unittest
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import logging_config  # noqa: E402


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = logging.getLogger()
        self.original_handlers = list(self.root.handlers)
        self.original_level = self.root.level
        self.tempdir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        for handler in self.root.handlers:
            handler.close()
        self.root.handlers[:] = self.original_handlers
        self.root.setLevel(self.original_level)
        self.tempdir.cleanup()

    def test_setup_writes_json_lines_to_rotating_file(self) -> None:
        logging_config.setup_logging(level="debug", json_logs=False, log_dir=self.tempdir.name)
        self.assertEqual(self.root.level, logging.DEBUG)
        self.assertEqual(len(self.root.handlers), 2)
        self.assertEqual(logging.getLogger("reportlab").level, logging.WARNING)

        logging.getLogger("offer_portal").info("Quote approved", extra={"quote_id": "abc12345"})
        for handler in self.root.handlers:
            handler.flush()

        lines = (Path(self.tempdir.name) / logging_config.LOG_FILE_NAME).read_text().splitlines()
        entries = [json.loads(line) for line in lines]
        self.assertEqual(entries[0]["msg"], "Logging initialized (level=debug)")
        self.assertEqual(entries[-1]["msg"], "Quote approved")
        self.assertEqual(entries[-1]["quote_id"], "abc12345")
        self.assertEqual(entries[-1]["level"], "INFO")

    def test_human_formatter_includes_exception(self) -> None:
        formatter = logging_config.HumanFormatter()
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "offer_portal", logging.ERROR, __file__, 1, "Payment failed", None, sys.exc_info()
            )
        line = formatter.format(record)
        self.assertIn("[E] offer_portal: Payment failed", line)
        self.assertIn("ValueError: boom", line)


if __name__ == "__main__":
    unittest.main()
