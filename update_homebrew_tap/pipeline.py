"""
The full release flow: validate the artifacts, then update the formula.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from update_homebrew_tap.validator import ArtifactValidator, ValidatedArtifact
from update_homebrew_tap.updater import FormulaUpdater, UpdateOptions, UpdateOutcome

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    artifacts: List[ValidatedArtifact] = field(default_factory=list)
    outcome: Optional[UpdateOutcome] = None


def run_release(
    settings,
    descriptor,
    options: Optional[UpdateOptions] = None,
    validator: Optional[ArtifactValidator] = None,
    updater: Optional[FormulaUpdater] = None,
    formula_path: Optional[Path] = None,
    output_file: Optional[Path] = None,
) -> ReleaseResult:
    """
    Validate the release artifacts and apply the release to the formula.

    Artifact failures propagate before the formula is opened, so a release
    whose binary did not verify never reaches the updater.
    """
    options = options or UpdateOptions()
    validator = validator or ArtifactValidator(settings)
    updater = updater or FormulaUpdater(settings)
    result = ReleaseResult()

    descriptor.validate()

    logger.info("Validating release binary %s", descriptor.filename)
    result.artifacts.append(validator.validate(
        descriptor.binary_url,
        descriptor.checksum,
        dry_run=options.dry_run,
        output_file=output_file,
    ))
    if descriptor.secondary_url and descriptor.secondary_checksum:
        logger.info("Validating secondary artifact %s", descriptor.secondary_url)
        result.artifacts.append(validator.validate(
            descriptor.secondary_url,
            descriptor.secondary_checksum,
            dry_run=options.dry_run,
        ))

    result.outcome = updater.update(formula_path or settings.formula_path, descriptor, options)
    return result
