import unittest

from cli_monitor.date_utils import iso_to_epoch_ms, now_ms


class DateUtilsTests(unittest.TestCase):
    def test_iso_to_epoch_ms(self) -> None:
        self.assertEqual(iso_to_epoch_ms("2025-01-15T12:00:00.000Z"), 1736942400000)
        self.assertEqual(iso_to_epoch_ms("2025-01-15T12:00:00.250Z"), 1736942400250)
        self.assertEqual(iso_to_epoch_ms("2025-01-15T14:00:00+02:00"), 1736942400000)

    def test_naive_timestamps_are_utc(self) -> None:
        self.assertEqual(iso_to_epoch_ms("2025-01-15 12:00:00"), 1736942400000)

    def test_unparseable_values(self) -> None:
        self.assertIsNone(iso_to_epoch_ms("not a date"))
        self.assertIsNone(iso_to_epoch_ms(""))
        self.assertIsNone(iso_to_epoch_ms(None))
        self.assertIsNone(iso_to_epoch_ms(1736942400000))
        self.assertIsNone(iso_to_epoch_ms("1970-01-01T00:00:00Z"))

    def test_out_of_range_timestamps(self) -> None:
        self.assertIsNone(iso_to_epoch_ms("9999-12-31T23:00:00-05:00"))
        self.assertIsNone(iso_to_epoch_ms("0001-01-01T00:30:00+01:00"))

    def test_now_ms_is_epoch_milliseconds(self) -> None:
        self.assertGreater(now_ms(), 1_700_000_000_000)


if __name__ == "__main__":
    unittest.main()
