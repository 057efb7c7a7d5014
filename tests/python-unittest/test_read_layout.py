import pathlib
import pickle
import sys
import unittest

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import read_layout
from libpipspeak import ConfigError, MalformedReadError
from read_layout import LayoutDescriptor, Segment, SegmentExtractor

SPACERS = ("ATG", "GAG", "TCGAG")
CB1, CB2, CB3, CB4 = "AGAAACCA", "ACGTAC", "AACCGG", "TTACGGCA"
UMI = "CATACGACTGCA"
R1 = CB1 + "ATG" + CB2 + "GAG" + CB3 + "TCGAG" + CB4 + UMI


class LayoutDescriptorTest(unittest.TestCase):
    def setUp(self):
        self.layout = LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), umi_len=12)

    def test_segment_offsets(self):
        self.assertEqual(
            self.layout.segment_offsets(),
            (
                Segment("cb1", 0, 8),
                Segment("linker1", 8, 3),
                Segment("cb2", 11, 6),
                Segment("linker2", 17, 3),
                Segment("cb3", 20, 6),
                Segment("linker3", 26, 5),
                Segment("cb4", 31, 8),
                Segment("umi", 39, 12),
            ),
        )
        self.assertEqual(self.layout.total_length, 51)
        self.assertEqual(len(R1), 51)

    def test_target_layout(self):
        self.assertEqual(self.layout.target_layout(), (("barcode", 28), ("umi", 12)))
        self.assertEqual(
            self.layout.output_slices(),
            (slice(0, 8), slice(11, 17), slice(20, 26), slice(31, 39), slice(39, 51)),
        )
        self.assertEqual(self.layout.output_slices(2)[0], slice(2, 10))

    def test_expected_linker(self):
        self.assertEqual(self.layout.expected_linker("linker1"), "ATG")
        self.assertEqual(self.layout.expected_linker("linker2"), "GAG")
        self.assertEqual(self.layout.expected_linker("linker3"), "TCGAG")
        with self.assertRaises(KeyError):
            self.layout.expected_linker("cb1")

    def test_immutable(self):
        with self.assertRaises(AttributeError):
            self.layout.spacers = ("A", "C", "G")
        self.assertEqual(pickle.loads(pickle.dumps(self.layout)), self.layout)

    def test_lowercase_spacers(self):
        layout = LayoutDescriptor.from_config(("atg", "gag", "tcgag"), (8, 6, 6, 8))
        self.assertEqual(layout, self.layout)

    def test_invalid_config(self):
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS, (8, 0, 6, 8))
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(("ATG", "", "TCGAG"), (8, 6, 6, 8))
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), umi_len=0)
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS[:2], (8, 6, 6, 8))
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS, (8, 6, 6))
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(("ATG", "GAX", "TCGAG"), (8, 6, 6, 8))
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), umi_len=2000)

    def test_read_length(self):
        LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), read_length=51)
        with self.assertRaises(ConfigError):
            LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), read_length=50)

    def test_linker_mismatches(self):
        extractor = SegmentExtractor(self.layout)
        self.assertEqual(self.layout.linker_mismatches(extractor(R1)), [])
        one_off = R1[:8] + "ACG" + R1[11:]
        self.assertEqual(self.layout.linker_mismatches(extractor(one_off)), [])
        self.assertEqual(
            self.layout.linker_mismatches(extractor(one_off), max_mismatch=0), ["linker1"]
        )
        two_off = R1[:26] + "TCCCG" + R1[31:]
        self.assertEqual(self.layout.linker_mismatches(extractor(two_off)), ["linker3"])

    def test_linker_mismatches_lowercase(self):
        extractor = SegmentExtractor(self.layout)
        self.assertEqual(
            self.layout.linker_mismatches(extractor(R1.lower()), max_mismatch=0), []
        )
        two_off = (R1[:26] + "TCCCG" + R1[31:]).lower()
        self.assertEqual(self.layout.linker_mismatches(extractor(two_off)), ["linker3"])

    def test_get_linker_regex(self):
        self.assertTrue(read_layout.get_linker_regex("TCGAG", 1).fullmatch("TCGTG"))
        self.assertFalse(read_layout.get_linker_regex("TCGAG", 1).fullmatch("ACGTG"))


class SegmentExtractorTest(unittest.TestCase):
    def setUp(self):
        self.extractor = SegmentExtractor(
            LayoutDescriptor.from_config(SPACERS, (8, 6, 6, 8), umi_len=12)
        )

    def test_extract(self):
        segments = self.extractor.extract(R1)
        self.assertEqual(segments.barcodes, (CB1, CB2, CB3, CB4))
        self.assertEqual(segments.linkers, SPACERS)
        self.assertEqual(segments.umi, UMI)
        self.assertEqual(segments.shift, 0)

    def test_extract_longer_read(self):
        segments = self.extractor(R1 + "TTTTTTTT")
        self.assertEqual(segments.umi, UMI)
        self.assertEqual(segments.cb4, CB4)

    def test_extract_shifted(self):
        segments = self.extractor.extract("GC" + R1, shift=2)
        self.assertEqual(segments.barcodes, (CB1, CB2, CB3, CB4))
        self.assertEqual(segments.umi, UMI)
        self.assertEqual(segments.shift, 2)

    def test_too_short(self):
        with self.assertRaises(MalformedReadError):
            self.extractor.extract(R1[:-1])
        with self.assertRaises(MalformedReadError):
            self.extractor.extract(R1, shift=1)
        with self.assertRaises(MalformedReadError):
            self.extractor.extract("")


if __name__ == "__main__":
    unittest.main()
