from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path, PurePosixPath

from skill_trust.exceptions import ArchiveError
from skill_trust.models.files import FileClass, PackageFile

logger = logging.getLogger(__name__)

MD_SUFFIXES = {".md", ".markdown", ".mdx", ".txt", ".rst"}
SCRIPT_SUFFIXES = {
    ".py",
    ".sh",
    ".bash",
    ".zsh",
    ".js",
    ".mjs",
    ".cjs",
    ".ts",
    ".jsx",
    ".tsx",
    ".rb",
    ".pl",
    ".ps1",
    ".php",
}
CONFIG_SUFFIXES = {".json", ".yaml", ".yml", ".toml"}

IGNORED_DIR_NAMES = {".git", "__pycache__", "node_modules", ".venv", "__MACOSX"}


def is_binary(file: PackageFile) -> bool:
    """Binary means NUL bytes or invalid UTF-8; names and leading bytes are not trusted."""
    if b"\x00" in file.content:
        return True
    try:
        file.content.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def classify(file: PackageFile) -> FileClass:
    if is_binary(file):
        return FileClass.BINARY
    path = PurePosixPath(file.path)
    suffix = path.suffix.lower()
    if suffix in MD_SUFFIXES:
        return FileClass.MD
    if suffix in SCRIPT_SUFFIXES:
        return FileClass.SCRIPTS
    if suffix in CONFIG_SUFFIXES:
        return FileClass.CONFIG
    if "scripts" in path.parts[:-1] or file.content.startswith(b"#!"):
        return FileClass.SCRIPTS
    return FileClass.OTHER


def decode_text(file: PackageFile) -> str:
    return file.content.decode("utf-8", errors="replace")


def _is_ignored(parts: tuple[str, ...]) -> bool:
    return any(part in IGNORED_DIR_NAMES for part in parts[:-1])


def read_archive(data: bytes) -> list[PackageFile]:
    """Read every regular file of a ZIP archive; raises ArchiveError on a corrupt archive."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            files: list[PackageFile] = []
            for info in archive.infolist():
                if info.is_dir():
                    continue
                path = PurePosixPath(info.filename)
                if path.is_absolute() or ".." in path.parts or _is_ignored(path.parts):
                    logger.info("Skipping archive member %s", info.filename)
                    continue
                files.append(PackageFile(path=path.as_posix(), content=archive.read(info)))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, ValueError, RuntimeError) as exc:
        raise ArchiveError(f"Failed to read skill package: {exc}") from exc
    files.sort(key=lambda item: item.path)
    return files


def read_directory(root: Path) -> list[PackageFile]:
    files: list[PackageFile] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.is_symlink():
            continue
        relative = path.relative_to(root)
        if _is_ignored(relative.parts):
            continue
        try:
            content = path.read_bytes()
        except OSError as exc:
            logger.warning("Unable to read %s: %s", path, exc)
            continue
        files.append(PackageFile(path=relative.as_posix(), content=content))
    return files


def pack_directory(root: Path) -> bytes:
    """Zip a skill directory in memory, in the same layout ``read_archive`` expects."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for file in read_directory(root):
            archive.writestr(file.path, file.content)
    return buffer.getvalue()


def extract_archive(data: bytes, destination: Path) -> list[PackageFile]:
    """Write the archive's regular files under ``destination``."""
    files = read_archive(data)
    destination.mkdir(parents=True, exist_ok=True)
    for file in files:
        target = destination / file.path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(file.content)
    return files
