"""
Artifact extraction and placement.

Opens a downloaded archive (zip or tar), unwraps CI double-archives,
locates the deployable tree inside it and swaps it into the live
directory. Everything here is blocking filesystem work; callers run it
through ``asyncio.to_thread``.
"""
import os
import shutil
import tarfile
import uuid
import zipfile

from deployhook.config import settings
from deployhook.errors import (
    ArchiveExtractError,
    ArchiveOpenError,
    CopyError,
    file_diagnostics,
)
from deployhook.logging_config import get_logger


log = get_logger(component="extraction")

ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz")


def is_archive_name(name: str) -> bool:
    return name.lower().endswith(ARCHIVE_SUFFIXES)


def _is_within(root: str, target: str) -> bool:
    root = os.path.realpath(root)
    target = os.path.realpath(target)
    return os.path.commonpath([root, target]) == root


def extract_archive(archive_path: str, dest: str) -> str:
    """
    Extract ``archive_path`` into ``dest``.

    Raises:
        ArchiveOpenError: file missing or not a readable archive
        ArchiveExtractError: extraction failed or an entry escapes ``dest``
    """
    if not os.path.isfile(archive_path):
        raise ArchiveOpenError(
            "Artifact file not found.",
            context=file_diagnostics(archive_path),
        )

    os.makedirs(dest, exist_ok=True)

    if zipfile.is_zipfile(archive_path):
        try:
            zf = zipfile.ZipFile(archive_path)
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveOpenError(f"Failed to open ZIP file: {e}", context=file_diagnostics(archive_path)) from e
        with zf:
            for member in zf.namelist():
                if not _is_within(dest, os.path.join(dest, member)):
                    raise ArchiveExtractError(f"Archive entry escapes extraction root: {member}")
            try:
                zf.extractall(dest)
            except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                raise ArchiveExtractError(
                    f"Failed to extract ZIP file: {e}",
                    context=file_diagnostics(archive_path, dest),
                ) from e
        return dest

    if tarfile.is_tarfile(archive_path):
        try:
            tf = tarfile.open(archive_path)
        except (tarfile.TarError, OSError) as e:
            raise ArchiveOpenError(f"Failed to open TAR file: {e}", context=file_diagnostics(archive_path)) from e
        with tf:
            for member in tf.getmembers():
                if member.issym() or member.islnk():
                    raise ArchiveExtractError(f"Archive entry is a link: {member.name}")
                if not _is_within(dest, os.path.join(dest, member.name)):
                    raise ArchiveExtractError(f"Archive entry escapes extraction root: {member.name}")
            try:
                tf.extractall(dest)
            except (tarfile.TarError, OSError) as e:
                raise ArchiveExtractError(
                    f"Failed to extract TAR file: {e}",
                    context=file_diagnostics(archive_path, dest),
                ) from e
        return dest

    raise ArchiveOpenError(
        "Artifact is not a supported archive (zip or tar).",
        context=file_diagnostics(archive_path),
    )


def _visible_entries(path: str) -> list[str]:
    return sorted(name for name in os.listdir(path) if name not in (".", ".."))


def unwrap_nested_archive(extract_dir: str, scratch: str) -> str:
    """
    CI artifacts are often an archive wrapping another archive.

    When ``extract_dir`` holds exactly one entry and it is an archive,
    extract that too and return the inner root; otherwise return
    ``extract_dir`` unchanged.
    """
    entries = _visible_entries(extract_dir)
    if len(entries) != 1:
        return extract_dir

    inner = os.path.join(extract_dir, entries[0])
    if not (os.path.isfile(inner) and is_archive_name(inner)):
        return extract_dir

    log.info("double_archive_detected", inner=entries[0])
    final_dir = os.path.join(scratch, "final")
    extract_archive(inner, final_dir)
    shutil.rmtree(extract_dir, ignore_errors=True)
    return final_dir


def _find_marker_dir(path: str, depth: int, max_depth: int, markers: list[str]) -> str | None:
    if depth > max_depth:
        return None
    if any(os.path.isfile(os.path.join(path, marker)) for marker in markers):
        return path
    for name in _visible_entries(path):
        child = os.path.join(path, name)
        if os.path.isdir(child) and not os.path.islink(child):
            found = _find_marker_dir(child, depth + 1, max_depth, markers)
            if found:
                return found
    return None


def find_target_directory(
    root: str,
    slug: str | None = None,
    markers: list[str] | None = None,
    max_depth: int | None = None,
) -> str:
    """
    Pick the directory whose contents become the live site.

    First match wins:
        1. a top-level directory named ``slug``
        2. the shallowest-first walk for a marker file, up to ``max_depth``
        3. the first top-level directory
        4. ``root`` itself
    """
    slug = slug if slug is not None else settings.THEME_SLUG
    markers = markers if markers is not None else settings.THEME_MARKER_FILES
    max_depth = max_depth if max_depth is not None else settings.THEME_SEARCH_DEPTH

    if slug:
        candidate = os.path.join(root, slug)
        if os.path.isdir(candidate):
            return candidate

    found = _find_marker_dir(root, 0, max_depth, markers)
    if found:
        return found

    for name in _visible_entries(root):
        candidate = os.path.join(root, name)
        if os.path.isdir(candidate):
            return candidate

    return root


def build_manifest(path: str) -> list[str]:
    """Sorted relative paths of every file under ``path``."""
    manifest = []
    for current, _dirs, files in os.walk(path):
        for name in files:
            manifest.append(os.path.relpath(os.path.join(current, name), path).replace(os.sep, "/"))
    return sorted(manifest)


def place_tree(source: str, live_dir: str) -> list[str]:
    """
    Replace the contents of ``live_dir`` with ``source``.

    The tree is copied into a sibling staging directory first and swapped
    in by rename, so a failed copy leaves the live directory untouched.

    Returns:
        Manifest of placed files
    """
    live_dir = os.path.abspath(live_dir)
    parent = os.path.dirname(live_dir)
    token = uuid.uuid4().hex[:8]
    staging = os.path.join(parent, f".{os.path.basename(live_dir)}.staging-{token}")
    previous = os.path.join(parent, f".{os.path.basename(live_dir)}.previous-{token}")

    try:
        os.makedirs(parent, exist_ok=True)
        shutil.copytree(source, staging, symlinks=True)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise CopyError(
            f"Failed to copy files to staging directory: {e}",
            context=file_diagnostics(source, parent),
        ) from e

    try:
        if os.path.exists(live_dir):
            os.rename(live_dir, previous)
        os.rename(staging, live_dir)
    except OSError as e:
        if os.path.exists(previous) and not os.path.exists(live_dir):
            os.rename(previous, live_dir)
        shutil.rmtree(staging, ignore_errors=True)
        raise CopyError(
            f"Failed to swap in new files: {e}",
            context=file_diagnostics(live_dir, parent),
        ) from e

    shutil.rmtree(previous, ignore_errors=True)
    return build_manifest(live_dir)


def extract_and_place(
    archive_path: str,
    scratch: str,
    live_dir: str | None = None,
    slug: str | None = None,
    markers: list[str] | None = None,
    max_depth: int | None = None,
) -> dict:
    """
    Full pipeline: extract, unwrap, discover, place.

    ``scratch`` is a private directory owned by the caller and removed by it.

    Returns:
        {"source": discovered dir relative to the archive root, "manifest": [...]}
    """
    live_dir = live_dir or settings.LIVE_DIR
    extract_dir = extract_archive(archive_path, os.path.join(scratch, "extract"))
    root = unwrap_nested_archive(extract_dir, scratch)
    target = find_target_directory(root, slug=slug, markers=markers, max_depth=max_depth)
    log.info("target_directory_found", root=root, target=target)
    manifest = place_tree(target, live_dir)
    return {
        "source": os.path.relpath(target, root).replace(os.sep, "/"),
        "manifest": manifest,
    }
