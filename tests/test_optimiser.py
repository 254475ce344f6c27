"""Tests for squish.optimiser module (the per-asset state machine)."""

from pathlib import Path

import pytest
from conftest import wait_for

from squish.asset_types import Image
from squish.errors import BackupOrRestoreFailed, SourceNotFound, ToolExitedNonZero
from squish.optimiser import OptimiserState


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"x" * 1000)
    return path


@pytest.fixture
def optimiser(registry, photo):
    return registry.coordinator.call(
        registry.get_or_create, str(photo), Image("png"), source_path=photo
    )


def on_coordinator(registry, fn, *args, **kwargs):
    return registry.coordinator.call(fn, *args, **kwargs)


@pytest.mark.fast
class TestTransitions:
    """Tests for IDLE -> RUNNING -> FINISHED | FAILED."""

    def test_new_asset_is_idle(self, optimiser, photo):
        snapshot = optimiser.snapshot()

        assert snapshot.state is OptimiserState.IDLE
        assert snapshot.source_path == photo
        assert snapshot.old_bytes == -1
        assert not snapshot.running

    def test_start_clears_previous_outcome(self, registry, optimiser):
        on_coordinator(registry, optimiser.finish_error, "Something broke")

        on_coordinator(registry, optimiser.start, "Scaling to 50%", True)

        snapshot = optimiser.snapshot()
        assert snapshot.state is OptimiserState.RUNNING
        assert snapshot.error is None
        assert snapshot.operation == "Scaling to 50%"
        assert snapshot.aggressive is True
        assert snapshot.progress.indeterminate

    def test_finish_success(self, registry, optimiser):
        on_coordinator(registry, optimiser.start)
        on_coordinator(registry, optimiser.finish_success, 1000, 400, (20, 10), (20, 10))

        snapshot = optimiser.snapshot()
        assert snapshot.state is OptimiserState.FINISHED
        assert snapshot.done
        assert snapshot.saved_bytes == 600
        assert snapshot.old_size == (20, 10)
        assert snapshot.progress.fraction == 1.0

    def test_finish_error_uses_short_summary(self, registry, optimiser):
        """Test that the asset shows a summary, never the tool's stderr."""
        error = ToolExitedNonZero("pngquant", ["--force"], stderr="libpng error: bad CRC", returncode=1)
        on_coordinator(registry, optimiser.start)

        on_coordinator(registry, optimiser.finish_error, error)

        snapshot = optimiser.snapshot()
        assert snapshot.state is OptimiserState.FAILED
        assert snapshot.failed
        assert snapshot.error == "Optimisation failed"

    def test_finish_error_from_file_not_found(self, registry, optimiser):
        on_coordinator(registry, optimiser.finish_error, SourceNotFound("/nope.png"))

        assert optimiser.snapshot().error == "File not found"

    def test_finish_notice(self, registry, optimiser):
        on_coordinator(registry, optimiser.start)
        on_coordinator(registry, optimiser.finish_notice, "Already optimised", 1000, 1000)

        snapshot = optimiser.snapshot()
        assert snapshot.state is OptimiserState.FINISHED
        assert snapshot.notice == "Already optimised"
        assert snapshot.error is None
        assert snapshot.saved_bytes == 0

    def test_stop_never_records_error(self, registry, optimiser):
        on_coordinator(registry, optimiser.start)

        on_coordinator(registry, optimiser.stop, False)

        snapshot = optimiser.snapshot()
        assert not snapshot.running
        assert snapshot.error is None
        assert str(optimiser.id) in registry

    def test_stop_and_remove(self, registry, optimiser):
        on_coordinator(registry, optimiser.start)

        on_coordinator(registry, optimiser.stop, True)

        assert optimiser.id not in registry
        assert optimiser.snapshot().state is OptimiserState.REMOVED

    def test_progress_ignored_when_not_running(self, registry, optimiser):
        from squish.progress import Progress

        on_coordinator(registry, optimiser.update_progress, Progress(1, 2, False))

        assert optimiser.snapshot().progress.indeterminate

    def test_progress_never_goes_backwards_within_a_run(self, registry, optimiser):
        from squish.progress import Progress

        on_coordinator(registry, optimiser.start, "Optimising")
        on_coordinator(registry, optimiser.update_progress, Progress(8, 10, False))
        on_coordinator(registry, optimiser.update_progress, Progress(2, 10, False))

        assert optimiser.snapshot().progress.completed_units == 8

        on_coordinator(registry, optimiser.start, "Optimising")
        on_coordinator(registry, optimiser.update_progress, Progress(2, 10, False))

        assert optimiser.snapshot().progress.completed_units == 2


@pytest.mark.slow
class TestAutoRemoval:
    """Tests for the auto-removal timer and interaction suspension."""

    def test_removed_after_delay(self, registry, optimiser):
        on_coordinator(registry, optimiser.start)
        on_coordinator(registry, optimiser.finish_success, 10, 5, remove_after_ms=50)

        assert wait_for(lambda: on_coordinator(registry, lambda: optimiser.id not in registry))
        assert optimiser.snapshot().state is OptimiserState.REMOVED

    def test_zero_delay_keeps_asset(self, registry, optimiser):
        on_coordinator(registry, optimiser.finish_success, 10, 5, remove_after_ms=0)

        assert optimiser.removal_timer is None
        assert optimiser.id in registry

    def test_hovering_suspends_removal(self, registry, optimiser):
        """Test that an asset under the pointer is not removed until it leaves."""
        on_coordinator(registry, optimiser.finish_success, 10, 5, remove_after_ms=100)
        on_coordinator(registry, optimiser.set_hovering, True)

        assert not wait_for(lambda: optimiser.id not in registry, timeout=0.3)

        on_coordinator(registry, optimiser.set_hovering, False)
        assert wait_for(lambda: on_coordinator(registry, lambda: optimiser.id not in registry))

    def test_restart_cancels_removal(self, registry, optimiser):
        on_coordinator(registry, optimiser.finish_success, 10, 5, remove_after_ms=100)
        on_coordinator(registry, optimiser.start)

        assert not wait_for(lambda: optimiser.id not in registry, timeout=0.3)
        assert optimiser.snapshot().running


class TestRestoreAndRename:
    def test_restore_original(self, registry, optimiser, photo):
        """Test that restore puts the backup back and resets the metrics."""
        registry.backups.backup(photo)
        photo.write_bytes(b"y" * 10)
        on_coordinator(registry, optimiser.finish_success, 1000, 10)

        on_coordinator(registry, optimiser.restore_original)

        snapshot = optimiser.snapshot()
        assert photo.read_bytes() == b"x" * 1000
        assert snapshot.is_original
        assert snapshot.new_bytes == -1
        assert snapshot.old_bytes == 1000
        assert optimiser.downscale_factor == 1.0

    def test_restore_converted_asset(self, registry, optimiser, photo):
        """Test that a converted asset is restored onto the file it came from."""
        registry.backups.backup(photo)
        converted = photo.with_suffix(".jpg")
        converted.write_bytes(b"j" * 10)
        optimiser.converted_from_path = photo
        optimiser.type = Image("jpeg")
        on_coordinator(registry, optimiser.finish_success, 1000, 10, result_path=converted)

        restored = on_coordinator(registry, optimiser.restore_original)

        snapshot = optimiser.snapshot()
        assert restored == photo
        assert photo.read_bytes() == b"x" * 1000
        assert not converted.exists()
        assert snapshot.type == Image("png")
        assert snapshot.source_path == photo
        assert snapshot.result_path is None
        assert snapshot.converted_from_path is None

    def test_restore_without_backup(self, registry, optimiser):
        with pytest.raises(BackupOrRestoreFailed):
            on_coordinator(registry, optimiser.restore_original)

    def test_rename_keeps_id_and_moves_backup(self, registry, optimiser, photo):
        optimiser.backup_path = registry.backups.backup(photo)

        target = on_coordinator(registry, optimiser.rename, "holiday")

        assert target == photo.with_name("holiday.png")
        assert target.exists()
        assert optimiser.id == str(photo)
        assert optimiser.path == target
        assert optimiser.backup_path.name == "holiday.png"
        assert optimiser.backup_path.exists()

    def test_rename_rejects_paths(self, registry, optimiser):
        with pytest.raises(ValueError, match="Invalid file name"):
            on_coordinator(registry, optimiser.rename, "../escape.png")

    def test_rename_existing_target(self, registry, optimiser, photo):
        Path(photo.with_name("taken.png")).write_bytes(b"")

        with pytest.raises(FileExistsError):
            on_coordinator(registry, optimiser.rename, "taken.png")
