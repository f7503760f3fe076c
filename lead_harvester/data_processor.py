from __future__ import annotations

import logging
from typing import Callable, Optional, Set

from . import contact_parser
from .models import Contact, ScrapeArtifact
from .pipeline_control import PipelineControl
from .storage import ArtifactStorage, ArtifactStore, ContactStore


class DataProcessor:
    """Turns stored pages into contacts.

    An artifact is marked parsed exactly once, including when its content
    cannot be read, so poison records are never retried.
    """

    def __init__(
        self,
        *,
        artifacts: ArtifactStore,
        artifact_storage: ArtifactStorage,
        contacts: ContactStore,
        control: Optional[PipelineControl] = None,
        parser: Callable[[str], Set[str]] = contact_parser.parse,
    ) -> None:
        self.artifacts = artifacts
        self.artifact_storage = artifact_storage
        self.contacts = contacts
        self.control = control
        self.parser = parser
        self.logger = logging.getLogger(__name__ + ".DataProcessor")

        self.processed_count = 0
        self.total_count = 0
        self.contacts_found = 0
        self.errors_count = 0

    def process_unparsed(self) -> int:
        """Parse every unparsed artifact; returns the number of contacts created."""
        unparsed = self.artifacts.unparsed()
        self.processed_count = 0
        self.total_count = len(unparsed)
        self.contacts_found = 0
        self.errors_count = 0
        if not unparsed:
            self.logger.info("No unparsed files found.")
            return 0

        for artifact in unparsed:
            if self.control is not None and not self.control.check_and_wait():
                self.logger.info("Parsing stopped by pipeline control (paused/cancelled/skipped)")
                break
            self.process_artifact(artifact)
            self.processed_count += 1
        return self.contacts_found

    def process_artifact(self, artifact: ScrapeArtifact) -> Optional[Contact]:
        try:
            content = self.artifact_storage.read(artifact.job_id, artifact.attempt, artifact.file_name)
        except OSError as exc:
            self.logger.error("Unable to read content of artifact %s: %s", artifact.id, exc)
            self.errors_count += 1
            self._mark_parsed(artifact)
            return None

        try:
            emails = self.parser(content)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("Unexpected error while parsing artifact %s: %s", artifact.id, exc, exc_info=True)
            self.errors_count += 1
            return None

        contact: Optional[Contact] = None
        if emails:
            contact = Contact(artifact_id=artifact.id, emails=sorted(emails))
            self.contacts.save(contact)
            self.contacts_found += 1
        self._mark_parsed(artifact)
        self.logger.info(
            "Parsed artifact %s: %d e-mail address(es)",
            artifact.id,
            len(emails),
        )
        return contact

    def _mark_parsed(self, artifact: ScrapeArtifact) -> None:
        artifact.parsed = True
        self.artifacts.save(artifact)


__all__ = ["DataProcessor"]
