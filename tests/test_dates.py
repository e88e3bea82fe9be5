import unittest
from datetime import datetime

from fakes import utc
from voicecal.dates import (
    format_until,
    parse_until,
    repair_datetime_string,
    resolve_relative_date,
    to_utc_iso,
)
from voicecal.errors import InputError


class DatesTests(unittest.TestCase):
    def test_format_until_treats_naive_values_as_utc(self) -> None:
        self.assertEqual(format_until(datetime(2025, 3, 9, 23, 59, 59)), "20250309T235959Z")
        self.assertEqual(format_until(utc(2025, 3, 9, 23, 59, 59)), "20250309T235959Z")

    def test_parse_until_variants(self) -> None:
        self.assertEqual(parse_until("20250309T235959Z"), utc(2025, 3, 9, 23, 59, 59))
        self.assertEqual(parse_until("20250309T235959"), utc(2025, 3, 9, 23, 59, 59))
        self.assertEqual(parse_until("20250309"), utc(2025, 3, 9))

    def test_to_utc_iso_uses_milliseconds_and_z(self) -> None:
        self.assertEqual(to_utc_iso(utc(2025, 1, 1, 8, 30)), "2025-01-01T08:30:00.000Z")

    def test_repair_concatenated_timestamp(self) -> None:
        self.assertEqual(
            repair_datetime_string("2025-11-17T18:41:12.910ZT22:00:00"),
            "2025-11-17T22:00:00.000Z",
        )

    def test_repair_passes_valid_timestamps_through(self) -> None:
        self.assertEqual(repair_datetime_string("2025-11-17T22:00:00+01:00"), "2025-11-17T21:00:00.000Z")

    def test_repair_rejects_garbage(self) -> None:
        with self.assertRaises(InputError):
            repair_datetime_string("next tuesday")

    def test_resolve_relative_offset(self) -> None:
        now = utc(2025, 1, 1, 12)
        self.assertEqual(resolve_relative_date("currentDate+3600000", now), "2025-01-01T13:00:00.000Z")

    def test_resolve_absolute_and_empty_values(self) -> None:
        self.assertEqual(resolve_relative_date("2025-01-02T10:00:00Z"), "2025-01-02T10:00:00.000Z")
        self.assertIsNone(resolve_relative_date(None))
        self.assertEqual(resolve_relative_date(""), "")


if __name__ == "__main__":
    unittest.main()
