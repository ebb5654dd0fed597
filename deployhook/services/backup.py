"""
Backup and restore of the live directory.

Backups are zip archives named ``backup-{deployment_id}-{unix_ts}.zip``
with every entry prefixed by the live directory's basename.
"""
import os
import shutil
import tempfile
import time
import zipfile

from deployhook.config import settings
from deployhook.errors import BackupError, file_diagnostics
from deployhook.logging_config import get_logger
from deployhook.services.extraction import extract_archive, place_tree


log = get_logger(component="backup")


def create_backup(deployment_id: str, live_dir: str | None = None, backup_dir: str | None = None) -> str | None:
    """
    Archive the current live directory.

    Returns:
        Path of the backup archive, or None when there is nothing to back
        up yet (first deployment)

    Raises:
        BackupError: the archive could not be written
    """
    live_dir = os.path.abspath(live_dir or settings.LIVE_DIR)
    backup_dir = backup_dir or settings.BACKUP_DIR

    if not os.path.isdir(live_dir):
        log.info("backup_skipped", reason="live directory does not exist", live_dir=live_dir)
        return None

    backup_path = os.path.join(backup_dir, f"backup-{deployment_id}-{int(time.time())}.zip")
    prefix = os.path.basename(live_dir)

    try:
        os.makedirs(backup_dir, exist_ok=True)
        with zipfile.ZipFile(backup_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for current, _dirs, files in os.walk(live_dir):
                for name in files:
                    full = os.path.join(current, name)
                    rel = os.path.relpath(full, live_dir)
                    zf.write(full, os.path.join(prefix, rel))
    except OSError as e:
        if os.path.exists(backup_path):
            os.remove(backup_path)
        raise BackupError(
            f"Failed to create backup: {e}",
            context=file_diagnostics(live_dir, backup_dir),
        ) from e

    log.info("backup_created", backup_path=backup_path, backup_size=os.path.getsize(backup_path))
    return backup_path


def restore_backup(backup_path: str, live_dir: str | None = None, scratch_root: str | None = None) -> list[str]:
    """
    Replace the live directory with the contents of a backup archive.

    Returns:
        Manifest of restored files
    """
    live_dir = os.path.abspath(live_dir or settings.LIVE_DIR)
    if not backup_path or not os.path.isfile(backup_path):
        raise BackupError(
            "Backup archive not found.",
            context=file_diagnostics(backup_path),
        )

    if scratch_root:
        os.makedirs(scratch_root, exist_ok=True)
    scratch = tempfile.mkdtemp(prefix="rollback-", dir=scratch_root)
    try:
        root = extract_archive(backup_path, scratch)
        prefixed = os.path.join(root, os.path.basename(live_dir))
        source = prefixed if os.path.isdir(prefixed) else root
        return place_tree(source, live_dir)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
