"""
Post-patch formula validation.

Every check runs, so one report lists every defect found in the candidate.
"""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from update_homebrew_tap.formula import FormulaDocument

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{[A-Z0-9_]+\}\}|\b[A-Z0-9_]*PLACEHOLDER[A-Z0-9_]*\b")


@dataclass
class Expectations:
    """What a freshly patched formula must contain."""

    bare_version: str
    checksum: str
    url_fragment: str
    secondary_resource: Optional[str] = None
    secondary_checksum: Optional[str] = None

    @classmethod
    def for_release(cls, descriptor, secondary_resource=None, secondary_checksum=None):
        return cls(
            bare_version=descriptor.bare_version,
            checksum=descriptor.normalized_checksum,
            url_fragment=f"releases/download/{descriptor.version}/{descriptor.filename}",
            secondary_resource=secondary_resource,
            secondary_checksum=secondary_checksum,
        )


@dataclass
class ValidationReport:
    structural: List[str] = field(default_factory=list)
    content: List[str] = field(default_factory=list)
    placeholders: List[str] = field(default_factory=list)

    @property
    def defect_count(self) -> int:
        return len(self.structural) + len(self.content) + len(self.placeholders)

    @property
    def ok(self) -> bool:
        return self.defect_count == 0

    def defects(self) -> List[str]:
        return (
            self.structural
            + self.content
            + [f"Unreplaced placeholder: {token}" for token in self.placeholders]
        )

    def summary(self) -> str:
        if self.ok:
            return "Formula validation passed"
        lines = [f"Formula validation failed with {self.defect_count} error(s):"]
        lines.extend(f"  - {defect}" for defect in self.defects())
        return "\n".join(lines)


class FormulaChecker:
    def __init__(self, settings):
        self.settings = settings

    def ruby(self) -> Optional[str]:
        if not self.settings.ruby_executable:
            return None
        return shutil.which(self.settings.ruby_executable)

    def check(self, path: Path, expected: Expectations) -> ValidationReport:
        text = Path(path).read_text(encoding="utf-8")
        return self.check_text(text, expected, path=path)

    def check_text(self, text: str, expected: Expectations, path: Optional[Path] = None) -> ValidationReport:
        report = ValidationReport()
        document = FormulaDocument.parse(text)

        self._check_syntax(document, path, report)
        self._check_structure(document, report)
        self._check_content(document, expected, report)

        for token in PLACEHOLDER_PATTERN.findall(text):
            if token not in report.placeholders:
                report.placeholders.append(token)

        for defect in report.defects():
            logger.error("✗ %s", defect)
        return report

    def _check_syntax(self, document, path, report) -> None:
        for problem in document.syntax_problems():
            report.structural.append(f"Ruby syntax: {problem}")

        ruby = self.ruby()
        if ruby is None or path is None:
            return
        timeout = self.settings.ruby_timeout
        try:
            result = subprocess.run(
                [ruby, "-c", str(path)],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            report.structural.append(f"Ruby syntax check timed out after {timeout:g}s")
            return
        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            report.structural.append(f"Formula has Ruby syntax errors: {output}")

    def _check_structure(self, document, report) -> None:
        if document.class_name is None or not (document.parent_class or "").endswith("Formula"):
            report.structural.append("Missing: Formula class definition")
        required = (
            ("desc", "Description field"),
            ("homepage", "Homepage field"),
            ("url", "URL field"),
            ("version", "Version field"),
            ("sha256", "SHA256 field"),
        )
        for name, label in required:
            if document.primary(name) is None:
                report.structural.append(f"Missing: {label}")
        if not document.has_install_method:
            report.structural.append("Missing: Install method")

    def _check_content(self, document, expected, report) -> None:
        version = document.primary("version")
        if version is not None and version.value != expected.bare_version:
            report.content.append(
                f"Version {expected.bare_version} not found in updated formula "
                f"(found {version.value})"
            )

        checksum = document.primary_checksum()
        if checksum is not None and checksum.value != expected.checksum:
            report.content.append("SHA256 checksum not found in updated formula")

        url = document.primary("url")
        if url is not None and expected.url_fragment not in url.value:
            report.content.append(f"Binary URL with {expected.url_fragment} not found")

        if expected.secondary_checksum and expected.secondary_resource:
            secondary = document.resource_field(expected.secondary_resource, "sha256")
            if secondary is None or secondary.value != expected.secondary_checksum:
                report.content.append(
                    f"SHA256 for resource {expected.secondary_resource} not found in updated formula"
                )
