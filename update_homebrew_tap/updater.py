"""
Formula updates: snapshot, patch, validate, promote, commit.

One update runs through an explicit state machine::

    START -> VALIDATING_INPUT -> SNAPSHOTTING -> PATCHING -> VALIDATING_OUTPUT
          -> COMMITTING -> DONE

with PREVIEWED (dry run), ROLLED_BACK and FAILED as the other exits. The live
formula is only overwritten once a patched working copy has passed
validation; a failed commit or push leaves the validated formula in place.
"""

import difflib
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from update_homebrew_tap.errors import (
    CommitFailed,
    InvalidInput,
    PatchFailed,
    PushFailed,
    TapUpdateError,
    ValidationFailed,
)
from update_homebrew_tap.formula import Edit, FormulaDocument
from update_homebrew_tap.formula_check import Expectations, FormulaChecker, ValidationReport
from update_homebrew_tap.git import GitError, GitRepository
from update_homebrew_tap.snapshot import Snapshot

logger = logging.getLogger(__name__)

_DOWNLOAD_SEGMENT = re.compile(r"/releases/download/(?P<tag>[^/]+)/(?P<filename>[^/]+)\Z")

COMMIT_TEMPLATE = """feat: update formula to {version}

Automated formula update from repository dispatch event.
- Updated version to {version}
- Updated SHA256 checksum
- Updated binary download URL
"""


class UpdateState(Enum):
    START = "start"
    VALIDATING_INPUT = "validating-input"
    SNAPSHOTTING = "snapshotting"
    PATCHING = "patching"
    VALIDATING_OUTPUT = "validating-output"
    ROLLED_BACK = "rolled-back"
    COMMITTING = "committing"
    PREVIEWED = "previewed"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS = {
    UpdateState.START: {UpdateState.VALIDATING_INPUT},
    UpdateState.VALIDATING_INPUT: {UpdateState.SNAPSHOTTING, UpdateState.FAILED},
    UpdateState.SNAPSHOTTING: {UpdateState.PATCHING, UpdateState.FAILED},
    UpdateState.PATCHING: {
        UpdateState.VALIDATING_OUTPUT,
        UpdateState.PREVIEWED,
        UpdateState.FAILED,
    },
    UpdateState.VALIDATING_OUTPUT: {
        UpdateState.COMMITTING,
        UpdateState.ROLLED_BACK,
        UpdateState.FAILED,
    },
    UpdateState.ROLLED_BACK: {UpdateState.FAILED},
    UpdateState.COMMITTING: {UpdateState.DONE, UpdateState.FAILED},
    UpdateState.PREVIEWED: set(),
    UpdateState.DONE: set(),
    UpdateState.FAILED: set(),
}


@dataclass
class UpdateOptions:
    dry_run: bool = False
    skip_commit: bool = False
    rollback: bool = True
    push: Optional[bool] = None


@dataclass
class UpdateOutcome:
    """Everything one update attempt did, successful or not."""

    path: Path
    version: str
    state: UpdateState = UpdateState.START
    history: List[UpdateState] = field(default_factory=lambda: [UpdateState.START])
    diff: str = ""
    report: Optional[ValidationReport] = None
    secondary_checksum: Optional[str] = None
    backup_path: Optional[Path] = None
    committed: bool = False
    pushed: bool = False
    commit: Optional[str] = None
    error: Optional[TapUpdateError] = None

    def advance(self, state: UpdateState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal update transition {self.state.value} -> {state.value}")
        logger.debug("Update state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)


@dataclass
class Patch:
    text: str
    edits: List[Edit]
    secondary_checksum: Optional[str] = None


def retag(value: str, old_tags: Sequence[str], new_tag: str) -> str:
    """Swap the first old release tag found in ``value`` for ``new_tag``."""
    for old in old_tags:
        if old and old in value:
            return value.replace(old, new_tag)
    return value


def retarget_release_url(url: str, new_tag: str) -> str:
    """Point a ``/releases/download/<tag>/<file>`` URL at another release."""
    match = _DOWNLOAD_SEGMENT.search(url)
    if not match:
        return url
    old_tag = match.group("tag")
    filename = match.group("filename").replace(old_tag, new_tag)
    return f"{url[: match.start()]}/releases/download/{new_tag}/{filename}"


class FormulaUpdater:
    def __init__(self, settings, repository: Optional[GitRepository] = None, checksums=None, checker=None):
        self.settings = settings
        self.repository = repository
        self.checksums = checksums
        self.checker = checker or FormulaChecker(settings)

    # Patching

    def plan(self, document: FormulaDocument, descriptor) -> Tuple[List[Edit], Optional[str]]:
        """Work out every field edit for ``descriptor``, plus the secondary checksum used."""
        url = document.primary("url")
        if url is None:
            raise PatchFailed("No url field found in the formula class")
        checksum = document.primary_checksum()
        if checksum is None:
            raise PatchFailed("No sha256 field found for the formula url")
        version = document.primary("version")
        if version is None:
            raise PatchFailed("No version field found in the formula class")

        old_tags = []
        segment = _DOWNLOAD_SEGMENT.search(url.value)
        if segment:
            old_tags.append(segment.group("tag"))
        old_tags.append(f"v{version.value}")

        edits = [
            Edit(url, descriptor.binary_url),
            Edit(version, descriptor.bare_version),
            Edit(checksum, descriptor.normalized_checksum),
        ]

        old_filename = url.value.rsplit("/", 1)[-1]
        for target in document.install_targets:
            if target.value == old_filename:
                new_value = descriptor.filename
            else:
                new_value = retag(target.value, old_tags, descriptor.version)
            if new_value != target.value:
                edits.append(Edit(target, new_value))

        secondary = self._plan_secondary(document, descriptor)
        edits.extend(secondary[0])
        return edits, secondary[1]

    def _plan_secondary(self, document, descriptor) -> Tuple[List[Edit], Optional[str]]:
        resource = self.settings.secondary_resource
        url = document.resource_field(resource, "url")
        checksum = document.resource_field(resource, "sha256")
        if url is None:
            if descriptor.secondary_url or descriptor.secondary_checksum:
                logger.warning("Formula has no resource %r; ignoring secondary artifact", resource)
            return [], None

        edits = []
        new_url = descriptor.secondary_url or retarget_release_url(url.value, descriptor.version)
        if new_url != url.value:
            edits.append(Edit(url, new_url))

        digest = descriptor.normalized_secondary_checksum
        if digest is None and self.checksums is not None:
            filename = new_url.rsplit("/", 1)[-1]
            digest = self.checksums.lookup(
                descriptor.owner, descriptor.repo, descriptor.version, filename
            )

        if digest is None:
            logger.warning(
                "Invalid or missing %s SHA256, updating only main binary checksum", resource
            )
            return edits, None
        if checksum is None:
            logger.warning("Resource %r has no sha256 field to update", resource)
            return edits, None

        edits.append(Edit(checksum, digest))
        return edits, digest

    def patch(self, text: str, descriptor) -> Patch:
        document = FormulaDocument.parse(text)
        edits, secondary = self.plan(document, descriptor)
        try:
            patched = document.apply(edits)
        except ValueError as exc:
            raise PatchFailed(f"Could not apply formula edits: {exc}") from exc
        return Patch(text=patched.text, edits=edits, secondary_checksum=secondary)

    # Update

    def update(self, path: Path, descriptor, options: Optional[UpdateOptions] = None) -> UpdateOutcome:
        """
        Apply ``descriptor`` to the formula at ``path``.

        Returns the outcome on success (DONE or PREVIEWED). Any failure is
        raised as a ``TapUpdateError`` whose ``outcome`` attribute records
        the states visited.
        """
        options = options or UpdateOptions()
        path = Path(path)
        outcome = UpdateOutcome(path=path, version=descriptor.version)
        snapshot = None
        working = None

        try:
            outcome.advance(UpdateState.VALIDATING_INPUT)
            descriptor.validate()
            if not path.is_file():
                raise InvalidInput(f"Formula file not found: {path}")

            outcome.advance(UpdateState.SNAPSHOTTING)
            if options.dry_run:
                snapshot = Snapshot.in_memory(path)
            else:
                snapshot = Snapshot.take(path, self.settings.backup_suffix)
                outcome.backup_path = snapshot.backup_path

            outcome.advance(UpdateState.PATCHING)
            try:
                original = snapshot.content.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise PatchFailed(f"Formula is not valid UTF-8: {exc}") from exc
            patch = self.patch(original, descriptor)
            outcome.secondary_checksum = patch.secondary_checksum
            outcome.diff = "".join(difflib.unified_diff(
                original.splitlines(keepends=True),
                patch.text.splitlines(keepends=True),
                fromfile=f"{path} (current)",
                tofile=f"{path} (proposed)",
            ))
            expectations = Expectations.for_release(
                descriptor,
                secondary_resource=self.settings.secondary_resource,
                secondary_checksum=patch.secondary_checksum,
            )

            if options.dry_run:
                outcome.report = self.checker.check_text(patch.text, expectations)
                outcome.advance(UpdateState.PREVIEWED)
                logger.info("Dry run: preview completed, no files were modified")
                return outcome

            working = path.with_name(f".{path.name}.candidate")
            try:
                working.write_text(patch.text, encoding="utf-8")
            except OSError as exc:
                raise PatchFailed(f"Cannot write working copy {working}: {exc}") from exc

            outcome.advance(UpdateState.VALIDATING_OUTPUT)
            report = self.checker.check(working, expectations)
            outcome.report = report
            if not report.ok:
                if options.rollback:
                    working.unlink()
                    snapshot.restore()
                    snapshot.discard()
                    outcome.backup_path = None
                    outcome.advance(UpdateState.ROLLED_BACK)
                else:
                    os.replace(working, path)
                    logger.warning("Rollback disabled; rejected formula left at %s", path)
                working = None
                raise ValidationFailed(report)

            os.replace(working, path)
            working = None
            logger.info("Formula file updated: %s", path)

            outcome.advance(UpdateState.COMMITTING)
            self._commit(path, descriptor, options, outcome)
            outcome.advance(UpdateState.DONE)
            return outcome
        except TapUpdateError as exc:
            self._fail(exc, outcome, snapshot, working, options)
            raise

    def _fail(self, error, outcome, snapshot, working, options) -> None:
        outcome.error = error
        error.outcome = outcome
        if working is not None and working.exists():
            working.unlink()
        if (
            options.rollback
            and snapshot is not None
            and snapshot.backup_path is not None
            and outcome.state in (UpdateState.PATCHING, UpdateState.SNAPSHOTTING)
        ):
            snapshot.restore()
        outcome.advance(UpdateState.FAILED)
        logger.error("Formula update failed (%s): %s", error.stage, error.detail)

    def _commit(self, path, descriptor, options, outcome) -> None:
        if options.skip_commit:
            logger.info("Skipping git commit (--skip-commit specified)")
            return

        repository = self.repository or GitRepository(path.resolve().parent)
        try:
            if not repository.has_changes(path):
                logger.warning("No changes detected in formula file")
                return
            repository.add(path)
            outcome.commit = repository.commit(
                COMMIT_TEMPLATE.format(version=descriptor.version), path
            )
        except GitError as exc:
            raise CommitFailed(f"Failed to commit changes: {exc}") from exc
        outcome.committed = True
        logger.info("Changes committed: feat: update formula to %s", descriptor.version)

        push = self.settings.push if options.push is None else options.push
        if not push:
            return
        try:
            repository.push(self.settings.git_remote, self.settings.git_branch)
        except GitError as exc:
            raise PushFailed(
                f"Commit {outcome.commit} was created locally but not pushed: {exc}"
            ) from exc
        outcome.pushed = True
        logger.info("Changes pushed to %s/%s", self.settings.git_remote, self.settings.git_branch)
