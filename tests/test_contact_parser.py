from __future__ import annotations

import tempfile
import unittest

from lead_harvester import contact_parser
from lead_harvester.data_processor import DataProcessor
from lead_harvester.models import ScrapeArtifact
from lead_harvester.storage import ArtifactStorage, ArtifactStore, ContactStore, JsonStore

PAGE = """
<html>
  <head><style>.logo { background: url(logo@2x.png); }</style></head>
  <body>
    <p>Reach our front desk at Info@BrightSmile-Dental.co.uk or call us.</p>
    <a href="mailto:bookings@brightsmile-dental.co.uk?subject=Hello">Book now</a>
    <a href="mailto:a.jones@harbourlaw.com,b.smith@harbourlaw.com">Partners</a>
    <img src="/static/logo@2x.png">
    <p>Broken: someone@invalid_domain, user@@double.com</p>
    <p>Again: info@brightsmile-dental.co.uk.</p>
  </body>
</html>
"""


class ContactParserTest(unittest.TestCase):
    def test_extracts_text_and_mailto_addresses(self) -> None:
        emails = contact_parser.parse(PAGE)

        self.assertEqual(
            emails,
            {
                "info@brightsmile-dental.co.uk",
                "bookings@brightsmile-dental.co.uk",
                "a.jones@harbourlaw.com",
                "b.smith@harbourlaw.com",
            },
        )

    def test_empty_input(self) -> None:
        self.assertEqual(contact_parser.parse(""), set())
        self.assertEqual(contact_parser.parse(None), set())
        self.assertEqual(contact_parser.parse("<html><body>No contact here</body></html>"), set())

    def test_normalize_email_rejects_assets_and_garbage(self) -> None:
        self.assertIsNone(contact_parser.normalize_email("icon@2x.png"))
        self.assertIsNone(contact_parser.normalize_email("not-an-email"))
        self.assertEqual(contact_parser.normalize_email(" Sales@Harbourlaw.com, "), "sales@harbourlaw.com")


class DataProcessorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        store = JsonStore()
        self.artifacts = ArtifactStore(store)
        self.contacts = ContactStore(store)
        self.artifact_storage = ArtifactStorage(self.temp_dir.name)
        self.processor = DataProcessor(
            artifacts=self.artifacts,
            artifact_storage=self.artifact_storage,
            contacts=self.contacts,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _artifact(self, job_id: str, content=None) -> ScrapeArtifact:
        artifact = ScrapeArtifact(job_id=job_id, attempt=1, file_name="page.html")
        if content is not None:
            self.artifact_storage.write(job_id, 1, "page.html", content)
        self.artifacts.save(artifact)
        return artifact

    def test_creates_contacts_and_marks_parsed(self) -> None:
        with_contact = self._artifact("job-1", PAGE)
        without_contact = self._artifact("job-2", "<p>nothing</p>")

        created = self.processor.process_unparsed()

        self.assertEqual(created, 1)
        self.assertEqual(self.processor.processed_count, 2)
        contacts = self.contacts.list()
        self.assertEqual(len(contacts), 1)
        self.assertEqual(contacts[0].artifact_id, with_contact.id)
        self.assertEqual(contacts[0].emails, sorted(contacts[0].emails))
        self.assertTrue(contacts[0].has_contact_info)
        self.assertTrue(self.artifacts.require(with_contact.id).parsed)
        self.assertTrue(self.artifacts.require(without_contact.id).parsed)
        self.assertEqual(self.artifacts.unparsed(), [])

    def test_unreadable_artifact_is_marked_parsed(self) -> None:
        missing = self._artifact("job-missing")

        self.processor.process_unparsed()

        self.assertTrue(self.artifacts.require(missing.id).parsed)
        self.assertEqual(self.processor.errors_count, 1)
        self.assertEqual(self.contacts.count(), 0)

    def test_parser_error_leaves_artifact_for_retry(self) -> None:
        def _broken(_html):
            raise RuntimeError("parser exploded")

        processor = DataProcessor(
            artifacts=self.artifacts,
            artifact_storage=self.artifact_storage,
            contacts=self.contacts,
            parser=_broken,
        )
        artifact = self._artifact("job-3", PAGE)

        processor.process_unparsed()

        self.assertFalse(self.artifacts.require(artifact.id).parsed)
        self.assertEqual(processor.errors_count, 1)

    def test_nothing_to_do(self) -> None:
        self.assertEqual(self.processor.process_unparsed(), 0)
        self.assertEqual(self.processor.total_count, 0)


if __name__ == "__main__":
    unittest.main()
