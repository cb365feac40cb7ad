import unittest
from decimal import Decimal

from submonitor.ranking import RankedItem, RankingEntry, format_compact_value, rank_entries, top_n


class TopNTests(unittest.TestCase):
    def test_sorts_descending_and_truncates(self) -> None:
        entries = [
            RankingEntry(name="Music", value=Decimal("833")),
            RankingEntry(name="Developer", value=Decimal("26000")),
            RankingEntry(name="Cloud", value=Decimal("99")),
        ]

        ranked = top_n(entries, 2)

        self.assertEqual([entry.name for entry in ranked], ["Developer", "Music"])

    def test_ties_keep_input_order(self) -> None:
        entries = [
            RankingEntry(name="first", value=Decimal("10")),
            RankingEntry(name="second", value=Decimal("20")),
            RankingEntry(name="third", value=Decimal("10")),
            RankingEntry(name="fourth", value=Decimal("20")),
        ]

        ranked = top_n(entries)

        self.assertEqual(
            [entry.name for entry in ranked], ["second", "fourth", "first", "third"]
        )

    def test_resorting_sorted_output_is_idempotent(self) -> None:
        entries = [
            RankingEntry(name=name, value=Decimal(value))
            for name, value in [("a", "5"), ("b", "7"), ("c", "5"), ("d", "1")]
        ]

        once = top_n(entries)

        self.assertEqual(top_n(once), once)

    def test_non_positive_limit_returns_nothing(self) -> None:
        entries = [RankingEntry(name="a", value=Decimal("1"))]

        self.assertEqual(top_n(entries, 0), [])
        self.assertEqual(top_n([], 3), [])


class CompactValueTests(unittest.TestCase):
    def test_thousands_are_rounded_with_marker(self) -> None:
        self.assertEqual(format_compact_value(26000), "26 тыс.")
        self.assertEqual(format_compact_value(Decimal("2400")), "2 тыс.")
        self.assertEqual(format_compact_value(Decimal("2500")), "3 тыс.")
        self.assertEqual(format_compact_value(1000), "1 тыс.")

    def test_small_values_are_whole_numbers(self) -> None:
        self.assertEqual(format_compact_value(833), "833")
        self.assertEqual(format_compact_value(Decimal("999.4")), "999")
        self.assertEqual(format_compact_value(Decimal("0")), "0")


class RankEntriesTests(unittest.TestCase):
    def test_backend_formatting_wins(self) -> None:
        entries = [
            RankingEntry(name="Amazon Music", value=Decimal("2400"), formatted="2,4 тыс."),
            RankingEntry(name="Apple Developer", value=Decimal("198000")),
        ]

        ranked = rank_entries(entries)

        self.assertEqual(
            ranked,
            [
                RankedItem(label="Apple Developer", value=Decimal("198000"), display_value="198 тыс."),
                RankedItem(label="Amazon Music", value=Decimal("2400"), display_value="2,4 тыс."),
            ],
        )


if __name__ == "__main__":
    unittest.main()
