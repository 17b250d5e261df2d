import unittest

from medassist.services.extractors import PAGE_BREAK
from medassist.services.markdown import chunk_markdown, is_heading_line, to_markdown


def _squash(text: str) -> str:
    return "".join(text.split())


class TestToMarkdown(unittest.TestCase):
    def test_all_caps_lines_become_headings(self) -> None:
        text = "DISCHARGE SUMMARY\nPatient is stable.\n  FOLLOW UP  \nSee GP in a week."
        self.assertEqual(
            to_markdown(text),
            "## DISCHARGE SUMMARY\nPatient is stable.\n## FOLLOW UP\nSee GP in a week.",
        )

    def test_heading_heuristic_edges(self) -> None:
        self.assertTrue(is_heading_line("ALLERGIES"))
        self.assertTrue(is_heading_line("  BLOOD PRESSURE LOG "))
        self.assertFalse(is_heading_line("I"))
        self.assertFalse(is_heading_line("DOSE 2"))
        self.assertFalse(is_heading_line("NOTE: TAKE WITH FOOD"))
        self.assertFalse(is_heading_line("Mostly lowercase"))
        self.assertFalse(is_heading_line(""))

    def test_blank_runs_collapse_to_one_paragraph_break(self) -> None:
        text = "first\n\n\n\nsecond\n \t\n\nthird"
        self.assertEqual(to_markdown(text), "first\n\nsecond\n\nthird")

    def test_text_without_headings_passes_through(self) -> None:
        text = "Take the tablets with food.\nAvoid alcohol."
        self.assertEqual(to_markdown(text), text)

    def test_page_breaks_survive_on_their_own_line(self) -> None:
        text = f"PAGE ONE\nbody{PAGE_BREAK}more body"
        self.assertEqual(to_markdown(text), f"## PAGE ONE\nbody\n{PAGE_BREAK}\nmore body")

    def test_empty_input(self) -> None:
        self.assertEqual(to_markdown(""), "")


class TestChunkMarkdown(unittest.TestCase):
    def test_empty_or_whitespace_yields_no_sections(self) -> None:
        self.assertEqual(chunk_markdown(""), [])
        self.assertEqual(chunk_markdown("  \n\n\t"), [])

    def test_short_document_without_headings_is_one_section(self) -> None:
        drafts = chunk_markdown("Just one paragraph.\n\nAnd another.")
        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].content, "Just one paragraph.\n\nAnd another.")
        self.assertIsNone(drafts[0].heading)
        self.assertFalse(drafts[0].is_heading_led)

    def test_splits_on_heading_lines_in_order(self) -> None:
        markdown = "Intro text.\n\n# Dosage\nTwice daily.\n\n### Side effects ###\nDrowsiness."
        drafts = chunk_markdown(markdown)
        self.assertEqual([d.heading for d in drafts], [None, "Dosage", "Side effects"])
        self.assertEqual(drafts[1].content, "# Dosage\nTwice daily.")
        self.assertTrue(drafts[1].is_heading_led)
        self.assertEqual(drafts[2].content, "### Side effects ###\nDrowsiness.")

    def test_hashes_inside_code_fences_are_not_headings(self) -> None:
        markdown = "# Setup\n```\n# not a heading\n```\nafter"
        drafts = chunk_markdown(markdown)
        self.assertEqual(len(drafts), 1)
        self.assertIn("# not a heading", drafts[0].content)

    def test_page_break_starts_a_continuation_part(self) -> None:
        markdown = to_markdown(f"MEDICATION GUIDE\nTake one tablet daily.{PAGE_BREAK}Store in a cool place.")
        drafts = chunk_markdown(markdown)
        self.assertEqual(len(drafts), 2)
        self.assertEqual(drafts[0].content, "## MEDICATION GUIDE\nTake one tablet daily.")
        self.assertTrue(drafts[0].is_heading_led)
        self.assertEqual(drafts[1].content, "Store in a cool place.")
        self.assertEqual((drafts[1].heading, drafts[1].part), ("MEDICATION GUIDE", 2))
        self.assertFalse(drafts[1].is_heading_led)

    def test_long_blocks_split_on_whitespace(self) -> None:
        words = [f"word{i:02d}" for i in range(30)]
        drafts = chunk_markdown(" ".join(words), max_section_length=50)
        self.assertGreater(len(drafts), 1)
        self.assertTrue(all(len(d.content) <= 50 for d in drafts))
        self.assertEqual([d.part for d in drafts], list(range(1, len(drafts) + 1)))
        self.assertEqual(" ".join(d.content for d in drafts).split(), words)

    def test_order_preserving(self) -> None:
        text = (
            "OVERVIEW\nThis leaflet explains your treatment.\n\n\n"
            f"DOSAGE\nTake 5 mg every morning.{PAGE_BREAK}Do not double doses.\n"
            "WARNINGS\nCall your doctor if symptoms worsen."
        )
        markdown = to_markdown(text)
        drafts = chunk_markdown(markdown, max_section_length=20)
        self.assertEqual(_squash("".join(d.content for d in drafts)), _squash(markdown))

    def test_rechunking_a_section_is_stable(self) -> None:
        markdown = to_markdown("ALLERGIES\nPenicillin.\n\nLatex.\nNUTRITION\nLow salt diet.")
        for draft in chunk_markdown(markdown):
            with self.subTest(content=draft.content):
                again = chunk_markdown(draft.content)
                self.assertEqual([d.content for d in again], [draft.content])


if __name__ == "__main__":
    unittest.main()
