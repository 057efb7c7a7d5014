import os
import pathlib
import sys
import tempfile
import unittest

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import whitelist_index
from libpipspeak import ConfigError
from whitelist_index import MatchStatus, WhitelistIndex

BARCODES = ["AGAAACCA", "GATTTCCC", "AAGTCCAA", "GAGAAACC"]


class WhitelistIndexTest(unittest.TestCase):
    def setUp(self):
        self.index = WhitelistIndex(BARCODES, name="bc1")

    def test_create_class(self):
        self.assertEqual(len(self.index), 4)
        self.assertEqual(self.index.length, 8)
        self.assertIn("GATTTCCC", self.index)
        self.assertNotIn("GATTTCCA", self.index)

    def test_exact_hits_are_stable(self):
        for barcode in BARCODES:
            self.assertEqual(self.index.correct(barcode), barcode)
            self.assertEqual(self.index.lookup(barcode), (barcode, MatchStatus.EXACT))

    def test_single_substitutions(self):
        # These barcodes are at least 4 substitutions apart, so every neighbor is unambiguous
        for barcode in BARCODES:
            for neighbor in WhitelistIndex.substitutions(barcode):
                self.assertEqual(self.index.correct(neighbor), barcode, neighbor)
        self.assertEqual(
            self.index.lookup("TGAAACCA"), ("AGAAACCA", MatchStatus.CORRECTED)
        )
        self.assertEqual(self.index.correct("CATTTCCC"), "GATTTCCC")
        self.assertEqual(self.index.correct("TAGTCCAA"), "AAGTCCAA")
        self.assertEqual(self.index.correct("CAGAAACC"), "GAGAAACC")

    def test_two_substitutions(self):
        self.assertIsNone(self.index.correct("TCAAACCA"))
        self.assertIsNone(self.index.correct("CTTTTCCC"))
        self.assertIsNone(self.index.correct("TTGTCCAA"))
        self.assertEqual(self.index.lookup("CCGAAACC"), (None, MatchStatus.UNMATCHED))

    def test_ambiguous(self):
        index = WhitelistIndex(["AACC", "AAGG"])
        self.assertEqual(index.lookup("AACG"), (None, MatchStatus.AMBIGUOUS))
        self.assertEqual(index.correct("AAGC"), None)
        self.assertEqual(index.correct("AACA"), "AACC")
        self.assertEqual(index.correct("AAGT"), "AAGG")

    def test_adjacent_canonical_barcodes(self):
        index = WhitelistIndex(["ACGT", "ACGA"])
        self.assertEqual(index.correct("ACGT"), "ACGT")
        self.assertEqual(index.correct("ACGA"), "ACGA")
        self.assertEqual(index.lookup("ACGC"), (None, MatchStatus.AMBIGUOUS))
        self.assertEqual(index.correct("ACTT"), "ACGT")

    def test_n_is_a_mismatch(self):
        self.assertEqual(self.index.correct("AGAANCCA"), "AGAAACCA")
        self.assertIsNone(self.index.correct("AGNANCCA"))
        self.assertIsNone(self.index.correct("NNNNNNNN"))

    def test_lowercase_and_wrong_length(self):
        self.assertEqual(self.index.correct("agaaacca"), "AGAAACCA")
        self.assertEqual(self.index.lookup("AGAAACC"), (None, MatchStatus.UNMATCHED))
        self.assertEqual(self.index.lookup("AGAAACCAA"), (None, MatchStatus.UNMATCHED))
        self.assertEqual(self.index.lookup(""), (None, MatchStatus.UNMATCHED))

    def test_exact_mode(self):
        index = WhitelistIndex(BARCODES, exact=True)
        self.assertEqual(index.correct("AGAAACCA"), "AGAAACCA")
        self.assertIsNone(index.correct("TGAAACCA"))

    def test_neighbor_count(self):
        # 4 barcodes x 8 positions x 4 alternative bases, none shared
        self.assertEqual(len(self.index._neighbors), 128)
        self.assertFalse(self.index._ambiguous)

    def test_invalid_whitelists(self):
        with self.assertRaises(ConfigError):
            WhitelistIndex([])
        with self.assertRaises(ConfigError):
            WhitelistIndex(["", "  "])
        with self.assertRaises(ConfigError):
            WhitelistIndex(["AGAAACCA", "GATTTCCC", "AAGTCCAA", "GAGAAACCC"])
        with self.assertRaises(ConfigError):
            WhitelistIndex(["AGAAACCA", "GATTNCCC"])

    def test_duplicates(self):
        with self.assertLogs("Whitelist", "WARNING"):
            index = WhitelistIndex(BARCODES + ["agaaacca"])
        self.assertEqual(len(index), 4)
        self.assertEqual(index.correct("TGAAACCA"), "AGAAACCA")

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "bc1.tsv")
            with open(path, "w") as fp:
                fp.write("AGAAACCA\tA1\nGATTTCCC\tA2\n\nAAGTCCAA\tA3\nGAGAAACC\tA4\n")
            index = WhitelistIndex.from_file(path, name="bc1")
            self.assertEqual(index.name, "bc1")
            self.assertEqual(index.barcodes, frozenset(BARCODES))

            empty = os.path.join(tmpdir, "empty.tsv")
            open(empty, "w").close()
            with self.assertRaises(ConfigError):
                WhitelistIndex.from_file(empty)
            with self.assertRaises(ConfigError):
                WhitelistIndex.from_file(os.path.join(tmpdir, "missing.tsv"))

    def test_substitutions(self):
        neighbors = list(whitelist_index.WhitelistIndex.substitutions("AC"))
        self.assertEqual(len(neighbors), 8)
        self.assertNotIn("AC", neighbors)
        self.assertIn("NC", neighbors)
        self.assertIn("AT", neighbors)


if __name__ == "__main__":
    unittest.main()
