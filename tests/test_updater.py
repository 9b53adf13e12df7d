import textwrap
from pathlib import Path

import pytest

from update_homebrew_tap.errors import (
    BackupFailed,
    CommitFailed,
    InvalidInput,
    PatchFailed,
    PushFailed,
    ValidationFailed,
)
from update_homebrew_tap.formula import FormulaDocument
from update_homebrew_tap.git import GitError, GitRepository
from update_homebrew_tap.release import ReleaseDescriptor
from update_homebrew_tap.updater import (
    FormulaUpdater,
    UpdateOptions,
    UpdateOutcome,
    UpdateState,
    retarget_release_url,
    retag,
)

from conftest import (
    NEW_SHA,
    NEW_SYSEXT_SHA,
    OLD_SHA,
    OLD_SYSEXT_SHA,
    RELEASE_URL,
    FakeChecksums,
    git,
)
from test_formula import RESOURCE_FIRST

SYSEXT_URL = (
    "https://github.com/beriberikix/usbipd-mac/releases/download/v0.2.0/"
    "USBIPDSystemExtension.systemextension.tar.gz"
)


def _release(**overrides):
    values = {"version": "v0.2.0", "binary_url": RELEASE_URL, "checksum": NEW_SHA}
    values.update(overrides)
    return ReleaseDescriptor(**values)


def _updater(settings, digest=NEW_SYSEXT_SHA, repository=None):
    checksums = FakeChecksums(digest)
    return FormulaUpdater(settings, repository=repository, checksums=checksums), checksums


SKIP_COMMIT = UpdateOptions(skip_commit=True)


class TestPatch:
    def test_release_fields_are_rewritten(self, settings, formula_path):
        updater, checksums = _updater(settings)

        outcome = updater.update(formula_path, _release(), SKIP_COMMIT)

        document = FormulaDocument.read(formula_path)
        assert outcome.state is UpdateState.DONE
        assert document.primary("url").value == RELEASE_URL
        assert document.primary("version").value == "0.2.0"
        assert document.primary_checksum().value == NEW_SHA
        assert document.resource_field("systemextension", "url").value == SYSEXT_URL
        assert document.resource_field("systemextension", "sha256").value == NEW_SYSEXT_SHA
        assert [t.value for t in document.install_targets] == ["usbipd-v0.2.0-macos"]
        assert "0.1.37" not in document.text
        assert checksums.lookups == [
            ("beriberikix", "usbipd-mac", "v0.2.0", "USBIPDSystemExtension.systemextension.tar.gz")
        ]
        assert outcome.history == [
            UpdateState.START,
            UpdateState.VALIDATING_INPUT,
            UpdateState.SNAPSHOTTING,
            UpdateState.PATCHING,
            UpdateState.VALIDATING_OUTPUT,
            UpdateState.COMMITTING,
            UpdateState.DONE,
        ]

    def test_backup_is_left_as_recovery_artifact(self, settings, formula_path, formula_text):
        updater, _ = _updater(settings)

        outcome = updater.update(formula_path, _release(), SKIP_COMMIT)

        assert outcome.backup_path == formula_path.with_name("usbip.rb.backup")
        assert outcome.backup_path.read_text(encoding="utf-8") == formula_text
        assert not list(formula_path.parent.glob(".*.candidate"))

    def test_concrete_release_scenario(self, settings, tmp_path):
        old = "0" * 63 + "1"
        new = "0" * 63 + "2"
        path = tmp_path / "tool.rb"
        path.write_text(textwrap.dedent("""\
            class Tool < Formula
              desc "A tool"
              homepage "https://github.com/org/repo"
              url "https://github.com/org/repo/releases/download/v1.2.2/tool-v1.2.2-macos"
              version "1.2.2"
              sha256 "%s"

              def install
                bin.install "tool-v1.2.2-macos" => "tool"
              end
            end
            """) % old, encoding="utf-8")
        descriptor = ReleaseDescriptor(
            version="v1.2.3",
            binary_url="https://github.com/org/repo/releases/download/v1.2.3/tool-v1.2.3-macos",
            checksum=new,
        )

        FormulaUpdater(settings).update(path, descriptor, SKIP_COMMIT)

        document = FormulaDocument.read(path)
        assert document.primary("version").value == "1.2.3"
        assert "v1.2.3" in document.primary("url").value
        assert document.primary_checksum().value == new
        assert old not in document.text

    @pytest.mark.parametrize("resource_first", [False, True])
    def test_primary_checksum_never_touches_the_resource(self, settings, formula_path, resource_first):
        if resource_first:
            formula_path.write_text(RESOURCE_FIRST, encoding="utf-8")
        updater, _ = _updater(settings, digest=None)

        updater.update(formula_path, _release(), SKIP_COMMIT)

        document = FormulaDocument.read(formula_path)
        assert document.primary_checksum().value == NEW_SHA
        assert document.resource_field("systemextension", "sha256").value == OLD_SYSEXT_SHA

    @pytest.mark.parametrize("resource_first", [False, True])
    def test_resource_checksum_never_touches_the_primary(self, settings, formula_text, resource_first):
        text = RESOURCE_FIRST if resource_first else formula_text
        updater, _ = _updater(settings, digest=NEW_SYSEXT_SHA)

        patch = updater.patch(text, _release(checksum=OLD_SHA))

        document = FormulaDocument.parse(patch.text)
        assert document.primary_checksum().value == OLD_SHA
        assert document.resource_field("systemextension", "sha256").value == NEW_SYSEXT_SHA

    def test_resource_url_is_retagged_independently(self, settings):
        updater, _ = _updater(settings, digest=None)

        patch = updater.patch(RESOURCE_FIRST, _release())

        document = FormulaDocument.parse(patch.text)
        assert document.resource_field("systemextension", "url").value == SYSEXT_URL

    def test_explicit_secondary_pair_skips_manifest_lookup(self, settings, formula_path):
        updater, checksums = _updater(settings, digest="c" * 64)
        explicit_url = SYSEXT_URL.replace(".tar.gz", ".zip")

        outcome = updater.update(
            formula_path,
            _release(secondary_url=explicit_url, secondary_checksum="D" * 64),
            SKIP_COMMIT,
        )

        document = FormulaDocument.read(formula_path)
        assert checksums.lookups == []
        assert outcome.secondary_checksum == "d" * 64
        assert document.resource_field("systemextension", "url").value == explicit_url
        assert document.resource_field("systemextension", "sha256").value == "d" * 64

    def test_manifest_unavailable_updates_only_primary(self, settings, formula_path, caplog):
        updater, _ = _updater(settings, digest=None)

        outcome = updater.update(formula_path, _release(), SKIP_COMMIT)

        document = FormulaDocument.read(formula_path)
        assert outcome.secondary_checksum is None
        assert document.primary_checksum().value == NEW_SHA
        assert document.resource_field("systemextension", "sha256").value == OLD_SYSEXT_SHA
        assert "updating only main binary checksum" in caplog.text

    def test_helpers(self):
        assert retag("usbipd-v0.1.37-test-macos", ["v0.1.37-test"], "v0.2.0") == "usbipd-v0.2.0-macos"
        assert retag("usbipd", ["v0.1.37-test"], "v0.2.0") == "usbipd"
        assert retarget_release_url(
            "https://github.com/o/r/releases/download/v1.0.0-beta/pkg-v1.0.0-beta.tar.gz", "v1.1.0"
        ) == "https://github.com/o/r/releases/download/v1.1.0/pkg-v1.1.0.tar.gz"
        assert retarget_release_url("https://example.com/pkg.tar.gz", "v1.1.0") == (
            "https://example.com/pkg.tar.gz"
        )


class TestFailures:
    def test_invalid_input_touches_nothing(self, settings, formula_path, formula_text):
        updater, checksums = _updater(settings)

        with pytest.raises(InvalidInput) as excinfo:
            updater.update(formula_path, _release(version="0.2.0"), SKIP_COMMIT)

        assert formula_path.read_text(encoding="utf-8") == formula_text
        assert sorted(p.name for p in formula_path.parent.iterdir()) == ["usbip.rb"]
        assert checksums.lookups == []
        assert excinfo.value.outcome.history[-2:] == [
            UpdateState.VALIDATING_INPUT,
            UpdateState.FAILED,
        ]

    def test_version_with_trailing_newline_is_invalid_input(self, settings, formula_path, formula_text):
        updater, _ = _updater(settings)

        with pytest.raises(InvalidInput) as excinfo:
            updater.update(formula_path, _release(version="v0.2.0\n"), SKIP_COMMIT)

        assert excinfo.value.exit_code == 2
        assert formula_path.read_text(encoding="utf-8") == formula_text
        assert not formula_path.with_name("usbip.rb.backup").exists()

    def test_missing_formula_is_invalid_input(self, settings, tmp_path):
        updater, _ = _updater(settings)
        with pytest.raises(InvalidInput):
            updater.update(tmp_path / "missing.rb", _release(), SKIP_COMMIT)

    def test_backup_failure_aborts_before_mutation(self, settings, formula_path, formula_text, monkeypatch):
        def refuse(self, data):
            raise OSError("read-only file system")

        monkeypatch.setattr(Path, "write_bytes", refuse)
        updater, _ = _updater(settings)

        with pytest.raises(BackupFailed):
            updater.update(formula_path, _release(), SKIP_COMMIT)

        monkeypatch.undo()
        assert formula_path.read_text(encoding="utf-8") == formula_text

    def test_patch_failure_leaves_document_and_snapshot(self, settings, formula_path, formula_text):
        text = formula_text.replace(
            '  url "https://github.com/beriberikix/usbipd-mac/releases/download/v0.1.37-test/usbipd-v0.1.37-test-macos"\n',
            "",
        )
        formula_path.write_bytes(text.encode("utf-8"))
        before = formula_path.read_bytes()
        updater, _ = _updater(settings)

        with pytest.raises(PatchFailed) as excinfo:
            updater.update(formula_path, _release(), SKIP_COMMIT)

        assert formula_path.read_bytes() == before
        assert formula_path.with_name("usbip.rb.backup").read_bytes() == before
        assert excinfo.value.outcome.state is UpdateState.FAILED

    def test_validation_failure_rolls_back_byte_for_byte(self, settings, formula_path, formula_text):
        formula_path.write_text(
            formula_text.replace('  desc "Macos implementation of the usb/ip protocol"\n', ""),
            encoding="utf-8",
        )
        before = formula_path.read_bytes()
        updater, _ = _updater(settings)

        with pytest.raises(ValidationFailed) as excinfo:
            updater.update(formula_path, _release(), SKIP_COMMIT)

        assert formula_path.read_bytes() == before
        assert not formula_path.with_name("usbip.rb.backup").exists()
        assert not list(formula_path.parent.glob(".*.candidate"))
        assert excinfo.value.report.structural == ["Missing: Description field"]
        assert excinfo.value.exit_code == 4
        assert excinfo.value.outcome.history[-2:] == [UpdateState.ROLLED_BACK, UpdateState.FAILED]

    def test_validation_failure_without_rollback_keeps_candidate(self, settings, formula_path, formula_text):
        formula_path.write_text(formula_text + "# {{CHECKSUM}}\n", encoding="utf-8")
        updater, _ = _updater(settings)

        with pytest.raises(ValidationFailed) as excinfo:
            updater.update(formula_path, _release(), UpdateOptions(skip_commit=True, rollback=False))

        assert excinfo.value.report.placeholders == ["{{CHECKSUM}}"]
        assert 'version "0.2.0"' in formula_path.read_text(encoding="utf-8")
        assert formula_path.with_name("usbip.rb.backup").exists()
        assert UpdateState.ROLLED_BACK not in excinfo.value.outcome.history

    def test_mismatched_url_tag_is_a_validation_failure(self, settings, formula_path, formula_text):
        updater, _ = _updater(settings)
        descriptor = _release(binary_url=RELEASE_URL.replace("download/v0.2.0", "download/v0.1.99"))

        with pytest.raises(ValidationFailed) as excinfo:
            updater.update(formula_path, descriptor, SKIP_COMMIT)

        assert formula_path.read_text(encoding="utf-8") == formula_text
        assert any("Binary URL" in defect for defect in excinfo.value.report.content)

    def test_illegal_transition_is_a_programming_error(self):
        outcome = UpdateOutcome(path=Path("x.rb"), version="v1.0.0")
        with pytest.raises(RuntimeError):
            outcome.advance(UpdateState.DONE)


class TestDryRun:
    def test_preview_writes_nothing(self, settings, formula_path, formula_text):
        updater, _ = _updater(settings)

        outcome = updater.update(formula_path, _release(), UpdateOptions(dry_run=True))

        assert outcome.state is UpdateState.PREVIEWED
        assert formula_path.read_text(encoding="utf-8") == formula_text
        assert sorted(p.name for p in formula_path.parent.iterdir()) == ["usbip.rb"]
        assert f'+  url "{RELEASE_URL}"' in outcome.diff
        assert '-     version "0.1.37-test"' in outcome.diff
        assert outcome.report.ok
        assert outcome.backup_path is None


class FakeRepository:
    def __init__(self, changed=True, commit_error=None, push_error=None):
        self.changed = changed
        self.commit_error = commit_error
        self.push_error = push_error
        self.added = []
        self.messages = []
        self.pushes = []

    def has_changes(self, path):
        return self.changed

    def add(self, path):
        self.added.append(path)

    def commit(self, message, path):
        if self.commit_error:
            raise self.commit_error
        self.messages.append(message)
        return "abc123"

    def push(self, remote, branch):
        if self.push_error:
            raise self.push_error
        self.pushes.append((remote, branch))


class TestCommit:
    def test_commit_and_push(self, settings, formula_path):
        repository = FakeRepository()
        updater, _ = _updater(settings, repository=repository)

        outcome = updater.update(formula_path, _release(), UpdateOptions(push=True))

        assert repository.added == [formula_path]
        assert repository.messages[0].splitlines()[0] == "feat: update formula to v0.2.0"
        assert repository.pushes == [("origin", "main")]
        assert outcome.committed and outcome.pushed
        assert outcome.commit == "abc123"

    def test_unchanged_formula_is_not_committed(self, settings, formula_path):
        repository = FakeRepository(changed=False)
        updater, _ = _updater(settings, repository=repository)

        outcome = updater.update(formula_path, _release())

        assert outcome.state is UpdateState.DONE
        assert not outcome.committed
        assert repository.messages == []

    def test_commit_failure_keeps_the_validated_formula(self, settings, formula_path):
        repository = FakeRepository(commit_error=GitError(["commit"], 1, "nothing to commit"))
        updater, _ = _updater(settings, repository=repository)

        with pytest.raises(CommitFailed) as excinfo:
            updater.update(formula_path, _release())

        assert not isinstance(excinfo.value, PushFailed)
        assert excinfo.value.exit_code == 6
        assert FormulaDocument.read(formula_path).primary("version").value == "0.2.0"
        assert formula_path.with_name("usbip.rb.backup").exists()

    def test_push_failure_is_reported_separately(self, settings, formula_path):
        repository = FakeRepository(push_error=GitError(["push"], 128, "no remote"))
        updater, _ = _updater(settings, repository=repository)

        with pytest.raises(PushFailed) as excinfo:
            updater.update(formula_path, _release(), UpdateOptions(push=True))

        assert repository.messages
        assert "created locally but not pushed" in str(excinfo.value)
        assert FormulaDocument.read(formula_path).primary("version").value == "0.2.0"


class TestGitRepository:
    def test_update_is_committed_once(self, settings, tap_repo):
        formula = tap_repo / "Formula" / "usbip.rb"
        updater, _ = _updater(settings, repository=GitRepository(tap_repo))

        first = updater.update(formula, _release())
        second = updater.update(formula, _release())

        assert first.committed
        assert not second.committed
        assert git(tap_repo, "log", "-1", "--format=%s").strip() == "feat: update formula to v0.2.0"
        assert git(tap_repo, "rev-list", "--count", "HEAD").strip() == "2"
        assert git(tap_repo, "show", "--name-only", "--format=", "HEAD").split() == ["Formula/usbip.rb"]

    def test_push_without_remote_keeps_local_commit(self, settings, tap_repo):
        formula = tap_repo / "Formula" / "usbip.rb"
        updater, _ = _updater(settings, repository=GitRepository(tap_repo))

        with pytest.raises(PushFailed):
            updater.update(formula, _release(), UpdateOptions(push=True))

        assert git(tap_repo, "rev-list", "--count", "HEAD").strip() == "2"
        assert 'version "0.2.0"' in formula.read_text(encoding="utf-8")
