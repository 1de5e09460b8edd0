#!/usr/bin/env python3
"""Artifacting: loom node index and screenshot ingestion v1.0.0.

Indexes conversation trees written by the loom plugin and ingests screenshots
dropped into an inbox folder of a vault, without ever repeating work.

Drop this into any vault and run:
  python artifacting.py build                    # Index loom nodes from data.json
  python artifacting.py search "your query"      # Substring search over loom nodes
  python artifacting.py ingest                   # Move new screenshots, write notes, OCR
  python artifacting.py screenshots "invoice"    # Search extracted screenshot text
  python artifacting.py sync                     # build + ingest, like a startup run
  python artifacting.py status                   # Index and state statistics
  python artifacting.py interactive              # Interactive node search

Key Features:
• Idempotent ingestion: processed paths are remembered across runs
• Collision-free attachment names: a.png, a-1.png, a-2.png, ...
• Crash-safe state: one JSON document written atomically
• Best-effort OCR: missing tesseract never blocks ingestion
• Config Support: Optional artifacting_config.yaml for customization
"""

# Standard library imports
import argparse
import io
import json
import os
import re
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
)

import yaml

# Version information
__version__ = "1.0.0"

# Constants
STATE_SCHEMA_VERSION = 1
DEFAULT_CONFIG_FILENAME = "artifacting_config.yaml"
DEFAULT_STATE_PATH = ".artifacting/state.json"
DEFAULT_LOOM_DATA_PATH = ".obsidian/plugins/loom/data.json"
DEFAULT_ATTACHMENT_FOLDER = "/"
DEFAULT_INPUT_FOLDER = "Inbox/Screenshots"
DEFAULT_NOTE_FOLDER = "Artifacts/Screenshots"
DEFAULT_BROWSE_LIMIT = 20
DEFAULT_PREVIEW_CHARS = 100
DEFAULT_OCR_LANGUAGE = "eng"
NOTE_EXTENSION = "md"
VAULT_ROOT = "/"

# File type constants
IMAGE_EXTENSIONS = ["png", "jpg", "jpeg"]

# Operation kinds guarded by their own lock
OPERATION_BUILD = "build"
OPERATION_INGEST = "ingest"


def get_symbols() -> Dict[str, str]:
    """Get appropriate symbols based on terminal encoding support."""
    encoding = getattr(sys.stdout, "encoding", None) or "ascii"
    try:
        "🔍📋✅👋".encode(encoding)
        return {
            "search": "🔍",
            "found": "📋",
            "success": "✅",
            "bye": "👋",
        }
    except (UnicodeEncodeError, LookupError):
        return {
            "search": "[Search]",
            "found": "[Found]",
            "success": "[Success]",
            "bye": "[Bye]",
        }


SYMBOLS = get_symbols()

# Pre-compiled regex patterns for performance
MULTI_SLASH_PATTERN = re.compile(r"/{2,}")
WINDOWS_PATH_PATTERN = re.compile(r'[A-Za-z]:[\\\/][^\\\/\s]*[\\\/]')
UNIX_PATH_PATTERN = re.compile(r'\/[^\/\s]*\/')
FILE_URL_PATTERN = re.compile(r'\bfile:\/\/[^\s]*')
TIMESTAMP_SEPARATOR_PATTERN = re.compile(r"[:.]")


class ArtifactingError(Exception):
    """Base error for failures surfaced to the caller."""


class IndexBuildFailure(ArtifactingError):
    """The loom source could not be turned into a node index."""


class SourceUnavailable(IndexBuildFailure):
    """The loom data file is missing, empty or unreadable."""


class FolderMissing(ArtifactingError):
    """A configured input or output folder is absent and cannot be used."""


class RelocationFailure(ArtifactingError):
    """A screenshot could not be moved into the attachment folder."""


class NoteCreationFailure(ArtifactingError):
    """The companion note for a screenshot could not be written."""


class ExtractionFailure(ArtifactingError):
    """The text-extraction collaborator failed on an image."""


def validate_path(file_path: Path, base_path: Optional[Path] = None) -> bool:
    """Validate file path to prevent directory traversal attacks."""
    try:
        resolved_path = file_path.resolve()

        if base_path is None:
            base_path = Path.cwd()
        else:
            base_path = base_path.resolve()

        try:
            resolved_path.relative_to(base_path)
            return True
        except ValueError:
            return False
    except (OSError, ValueError):
        return False


def sanitize_error_message(error_msg: str) -> str:
    """Sanitize error messages to prevent information leakage."""
    sanitized = WINDOWS_PATH_PATTERN.sub('', error_msg)
    sanitized = UNIX_PATH_PATTERN.sub('/', sanitized)
    sanitized = FILE_URL_PATTERN.sub('[FILE_PATH]', sanitized)
    return sanitized


def log_error(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized error logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"ERROR: {message}: {sanitized_error}")
    else:
        print(f"ERROR: {message}")


def log_warning(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized warning logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"Warning: {message}: {sanitized_error}")
    else:
        print(f"Warning: {message}")


def log_info(message: str, *, quiet: bool = False) -> None:
    """Progress message, suppressed in quiet mode."""
    if not quiet:
        print(message)


def normalize_path(path: str) -> str:
    """Normalize a vault path: forward slashes, no duplicate or edge separators.

    The vault root normalizes to "/".
    """
    normalized = path.replace("\\", "/")
    normalized = MULTI_SLASH_PATTERN.sub("/", normalized)
    normalized = normalized.strip("/")
    return normalized or VAULT_ROOT


def join_vault_path(folder: str, name: str) -> str:
    """Join a vault folder and an entry name into a normalized path."""
    return normalize_path(f"{folder}/{name}")


def iso_timestamp(moment: datetime) -> str:
    """Format a moment as ISO-8601 UTC with millisecond precision."""
    utc_moment = moment.astimezone(timezone.utc)
    return utc_moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by iso_timestamp (or any ISO-8601 string)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filename_timestamp(moment: datetime) -> str:
    """Timestamp safe for file names: ':' and '.' become '-'."""
    return TIMESTAMP_SEPARATOR_PATTERN.sub("-", iso_timestamp(moment))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load optional configuration file."""
    default_config = {
        "vault": {
            "dir": ".",
            "loom_data_path": DEFAULT_LOOM_DATA_PATH,
            "attachment_folder": DEFAULT_ATTACHMENT_FOLDER,
        },
        "state": {
            "path": DEFAULT_STATE_PATH,
        },
        "screenshots": {
            "input_folder": DEFAULT_INPUT_FOLDER,
            "note_folder": DEFAULT_NOTE_FOLDER,
            "extensions": list(IMAGE_EXTENSIONS),
        },
        "search": {
            "browse_limit": DEFAULT_BROWSE_LIMIT,
            "preview_chars": DEFAULT_PREVIEW_CHARS,
        },
        "ocr": {
            "enabled": True,
            "language": DEFAULT_OCR_LANGUAGE,
        },
    }

    config_file = Path(config_path or DEFAULT_CONFIG_FILENAME)
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f)

            if isinstance(user_config, dict):
                _merge_configs(default_config, user_config)
            elif user_config is not None:
                log_warning(f"Ignoring config file {config_file}: top level must be a mapping")
        except (FileNotFoundError, PermissionError) as e:
            log_warning(f"Could not access config file {config_file}", e)
        except yaml.YAMLError as yaml_error:
            log_warning(f"Invalid YAML format in {config_file}", yaml_error)

    return default_config


def _merge_configs(default: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Recursively merge user config into default config."""
    for key, value in user.items():
        if (
            key in default
            and isinstance(default[key], dict)
            and isinstance(value, dict)
        ):
            _merge_configs(default[key], value)
        else:
            default[key] = value


def default_settings(config: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Screenshot folder settings seeded from config (or built-in defaults)."""
    screenshots = (config or {}).get("screenshots", {})
    return {
        "screenshot_input_folder": screenshots.get("input_folder", DEFAULT_INPUT_FOLDER),
        "screenshot_note_folder": screenshots.get("note_folder", DEFAULT_NOTE_FOLDER),
    }


# --- Data model ---

@dataclass
class ArtifactNode:
    """Flattened record of one loom conversation-tree node."""

    id: str
    parent_id: Optional[str]
    text: str
    document_path: str
    bookmarked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "text": self.text,
            "documentPath": self.document_path,
            "bookmarked": self.bookmarked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactNode":
        text = data["text"]
        if not isinstance(text, str):
            raise TypeError("node text must be a string")
        parent_id = data.get("parentId")
        return cls(
            id=str(data["id"]),
            parent_id=parent_id if isinstance(parent_id, str) else None,
            text=text,
            document_path=str(data.get("documentPath", "")),
            bookmarked=data.get("bookmarked") is True,
        )


@dataclass
class ScreenshotRecord:
    """Index entry for one ingested image and its companion note."""

    current_path: str
    note_path: str
    extracted_text: Optional[str]
    processed_at: datetime
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPath": self.current_path,
            "notePath": self.note_path,
            "ocrText": self.extracted_text,
            "processedDate": iso_timestamp(self.processed_at),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScreenshotRecord":
        for key in ("currentPath", "notePath", "processedDate"):
            if not isinstance(data[key], str):
                raise TypeError(f"screenshot {key} must be a string")
        text = data.get("ocrText")
        tags = data.get("tags")
        return cls(
            current_path=data["currentPath"],
            note_path=data["notePath"],
            extracted_text=text if isinstance(text, str) else None,
            processed_at=parse_timestamp(data["processedDate"]),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        )


@dataclass
class PersistedState:
    """Everything that survives between runs, saved as one document.

    ``processed_paths`` keeps insertion order on disk; membership checks go
    through an in-memory set kept in step by ``mark_processed``.
    """

    settings: Dict[str, str] = field(default_factory=default_settings)
    node_index: Dict[str, ArtifactNode] = field(default_factory=dict)
    screenshot_index: Dict[str, ScreenshotRecord] = field(default_factory=dict)
    processed_paths: List[str] = field(default_factory=list)
    last_built_at: Optional[str] = None
    last_ingested_at: Optional[str] = None
    _processed_lookup: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._processed_lookup = set(self.processed_paths)

    def is_processed(self, path: str) -> bool:
        return path in self._processed_lookup

    def mark_processed(self, path: str) -> None:
        if path in self._processed_lookup:
            return
        self._processed_lookup.add(path)
        self.processed_paths.append(path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "settings": dict(self.settings),
            "node_index": {
                node_id: node.to_dict() for node_id, node in self.node_index.items()
            },
            "screenshot_index": {
                path: record.to_dict() for path, record in self.screenshot_index.items()
            },
            "processed_paths": list(self.processed_paths),
            "last_built_at": self.last_built_at,
            "last_ingested_at": self.last_ingested_at,
        }


# --- Host primitives ---

@dataclass(frozen=True)
class VaultEntry:
    """A child of a vault folder: either a file or a folder, never both."""

    kind: str
    path: str

    FILE = "file"
    FOLDER = "folder"

    @property
    def is_file(self) -> bool:
        return self.kind == self.FILE

    @property
    def is_folder(self) -> bool:
        return self.kind == self.FOLDER

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def basename(self) -> str:
        """File name without its extension."""
        return Path(self.name).stem if self.extension else self.name

    @property
    def extension(self) -> str:
        return Path(self.name).suffix[1:]

    @property
    def parent(self) -> str:
        if "/" not in self.path:
            return VAULT_ROOT
        return self.path.rsplit("/", 1)[0]


class Vault:
    """Filesystem primitives over a vault root, addressed by vault paths.

    Every primitive is a single filesystem call; callers sequence them.
    """

    def __init__(self, root: str = ".") -> None:
        self.root = Path(root).resolve()

    def full_path(self, path: str) -> Path:
        """Map a vault path to an absolute path inside the vault root."""
        normalized = normalize_path(path)
        full = self.root if normalized == VAULT_ROOT else self.root / normalized
        if not validate_path(full, self.root):
            raise ValueError(f"Path escapes the vault: {path}")
        return full

    def exists(self, path: str) -> bool:
        return self.full_path(path).exists()

    def get_entry(self, path: str) -> Optional[VaultEntry]:
        """Return the entry at ``path`` or None if nothing is there."""
        full = self.full_path(path)
        if full.is_dir():
            return VaultEntry(VaultEntry.FOLDER, normalize_path(path))
        if full.is_file():
            return VaultEntry(VaultEntry.FILE, normalize_path(path))
        return None

    def create_folder(self, path: str) -> None:
        self.full_path(path).mkdir(parents=True, exist_ok=True)

    def rename(self, source: str, destination: str) -> None:
        """Move an entry; refuses to replace an existing destination."""
        target = self.full_path(destination)
        if target.exists():
            raise FileExistsError(f"Destination already exists: {destination}")
        os.rename(self.full_path(source), target)

    def create(self, path: str, content: str) -> None:
        """Create a new text file; fails if the file already exists."""
        with open(self.full_path(path), "x", encoding="utf-8") as handle:
            handle.write(content)

    def create_binary(self, path: str, data: bytes) -> None:
        with open(self.full_path(path), "xb") as handle:
            handle.write(data)

    def read(self, path: str) -> str:
        return self.full_path(path).read_text(encoding="utf-8")

    def read_binary(self, path: str) -> bytes:
        return self.full_path(path).read_bytes()

    def list_children(self, path: str) -> List[VaultEntry]:
        """Immediate children of a folder, sorted by name."""
        folder = normalize_path(path)
        entries = []
        for child in sorted(self.full_path(folder).iterdir(), key=lambda p: p.name):
            child_path = join_vault_path(folder, child.name)
            if child.is_dir():
                entries.append(VaultEntry(VaultEntry.FOLDER, child_path))
            elif child.is_file():
                entries.append(VaultEntry(VaultEntry.FILE, child_path))
        return entries


def resolve_attachment_folder(setting: str, *, quiet: bool = False) -> str:
    """Turn the attachment-folder setting into a vault folder path.

    "/" is the vault root. A "./" prefix means "next to the current note",
    which has no meaning for batch ingestion, so it is used as a root-level
    folder instead.
    """
    if setting.startswith("./"):
        log_warning(
            "Attachment folder is relative to the current note; "
            "using it as a root-level folder for screenshots",
            quiet=quiet,
        )
        setting = setting[2:]
    return normalize_path(setting)


def allocate_path(vault: Vault, directory: str, base_name: str, extension: str) -> str:
    """Find a free path for ``base_name.extension`` inside ``directory``.

    Tries ``base.ext`` then ``base-1.ext``, ``base-2.ext`` ... and returns
    the first one that does not exist. Not safe against concurrent callers;
    the ingester calls it once per file, sequentially.
    """
    candidate = join_vault_path(directory, f"{base_name}.{extension}")
    counter = 0
    while vault.exists(candidate):
        counter += 1
        candidate = join_vault_path(directory, f"{base_name}-{counter}.{extension}")
    return candidate


# --- State store ---

class StateStore:
    """Loads and atomically saves the persisted state document."""

    def __init__(
        self,
        state_path: Path,
        settings_defaults: Optional[Dict[str, str]] = None,
        quiet: bool = False,
    ) -> None:
        self.state_path = Path(state_path)
        self.settings_defaults = dict(settings_defaults or default_settings())
        self.quiet = quiet
        # Guards serialization and every mutation of the shared state.
        self.lock = threading.Lock()

    def default_state(self) -> PersistedState:
        return PersistedState(settings=dict(self.settings_defaults))

    def load(self) -> PersistedState:
        """Load the state document if it exists, otherwise return defaults."""
        if not self.state_path.exists():
            return self.default_state()

        try:
            with open(self.state_path, "r", encoding="utf-8") as state_file:
                data = json.load(state_file)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as err:
            log_warning(
                f"Could not read state at {self.state_path.name}; starting fresh",
                err,
                quiet=self.quiet,
            )
            return self.default_state()

        if not isinstance(data, dict):
            log_warning(
                f"State at {self.state_path.name} is not an object; starting fresh",
                quiet=self.quiet,
            )
            return self.default_state()

        settings = dict(self.settings_defaults)
        stored_settings = data.get("settings")
        if isinstance(stored_settings, dict):
            settings.update(
                {key: value for key, value in stored_settings.items() if isinstance(value, str)}
            )

        stored_paths = data.get("processed_paths")
        if not isinstance(stored_paths, list):
            if stored_paths is not None:
                log_warning("Ignoring unreadable processed_paths in state", quiet=self.quiet)
            stored_paths = []

        state = PersistedState(
            settings=settings,
            node_index=self._load_entries(data.get("node_index"), ArtifactNode.from_dict, "node"),
            screenshot_index=self._load_entries(
                data.get("screenshot_index"), ScreenshotRecord.from_dict, "screenshot"
            ),
            processed_paths=[path for path in stored_paths if isinstance(path, str)],
            last_built_at=self._load_timestamp(data.get("last_built_at")),
            last_ingested_at=self._load_timestamp(data.get("last_ingested_at")),
        )
        return state

    @staticmethod
    def _load_timestamp(value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    def _load_entries(
        self, raw: Any, factory: Callable[[Dict[str, Any]], Any], label: str
    ) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            return {}
        entries = {}
        for key, value in raw.items():
            if not isinstance(value, dict):
                continue
            try:
                entries[key] = factory(value)
            except (KeyError, TypeError, ValueError) as err:
                log_warning(f"Dropping unreadable {label} entry {key}", err, quiet=self.quiet)
        return entries

    def save(self, state: PersistedState) -> None:
        """Persist the state; readers see either the old or the new document."""
        with self.lock:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.state_path.name}.",
                suffix=".tmp",
                dir=str(self.state_path.parent),
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as state_file:
                    json.dump(state.to_dict(), state_file, indent=2, ensure_ascii=False)
                    state_file.flush()
                    os.fsync(state_file.fileno())
                os.replace(tmp_path, self.state_path)
            except Exception:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise


# --- Tree index builder ---

class TreeIndexBuilder:
    """Flattens the loom plugin's nested document into a node index."""

    def __init__(
        self,
        vault: Vault,
        loom_data_path: str = DEFAULT_LOOM_DATA_PATH,
        quiet: bool = False,
    ) -> None:
        self.vault = vault
        self.loom_data_path = normalize_path(loom_data_path)
        self.quiet = quiet

    def read_source(self) -> Dict[str, Any]:
        """Read and parse the loom data file from the vault."""
        if not self.vault.exists(self.loom_data_path):
            raise SourceUnavailable(f"Loom data file not found at: {self.loom_data_path}")

        try:
            raw = self.vault.read(self.loom_data_path)
        except (OSError, UnicodeDecodeError) as error:
            raise SourceUnavailable(
                f"Could not read loom data file {self.loom_data_path}: {error}"
            ) from error

        if not raw.strip():
            raise SourceUnavailable("Loom data file is empty.")

        try:
            return json.loads(raw)
        except json.JSONDecodeError as error:
            raise IndexBuildFailure(f"Loom data file is not valid JSON: {error}") from error

    def build(self, source: Any) -> Dict[str, ArtifactNode]:
        """Build a fresh node index from a parsed loom document.

        Entries without a string ``text`` are skipped. When the same node id
        shows up in two documents the one seen last wins.
        """
        documents = source.get("state") if isinstance(source, dict) else None
        if not isinstance(documents, dict):
            raise IndexBuildFailure("Loom data has no 'state' collection")

        index: Dict[str, ArtifactNode] = {}
        skipped = 0
        for document_path, document_state in documents.items():
            nodes = document_state.get("nodes") if isinstance(document_state, dict) else None
            if not isinstance(nodes, dict):
                continue

            for node_id, node_data in nodes.items():
                if not isinstance(node_data, dict) or not isinstance(node_data.get("text"), str):
                    skipped += 1
                    continue

                parent_id = node_data.get("parentId")
                index[node_id] = ArtifactNode(
                    id=node_id,
                    parent_id=parent_id if isinstance(parent_id, str) else None,
                    text=node_data["text"],
                    document_path=document_path,
                    bookmarked=node_data.get("bookmarked") is True,
                )

        if skipped:
            log_info(f"Skipped {skipped} malformed loom node entries", quiet=self.quiet)
        return index


# --- Search engine ---

class SearchEngine:
    """Case-insensitive substring search over the flat indices.

    A linear scan; results keep the index's build order and are not ranked.
    """

    def __init__(self, browse_limit: int = DEFAULT_BROWSE_LIMIT) -> None:
        self.browse_limit = browse_limit

    def search(
        self,
        query: str,
        index: Dict[str, ArtifactNode],
        limit: Optional[int] = None,
    ) -> List[ArtifactNode]:
        """Nodes whose text contains ``query``; an empty query browses."""
        return self._match(query, index.values(), lambda node: node.text, limit)

    def search_screenshots(
        self,
        query: str,
        index: Dict[str, ScreenshotRecord],
        limit: Optional[int] = None,
    ) -> List[ScreenshotRecord]:
        """Screenshots whose extracted text contains ``query``."""
        return self._match(query, index.values(), lambda record: record.extracted_text, limit)

    def _match(
        self,
        query: str,
        items: Iterable[Any],
        text_of: Callable[[Any], Optional[str]],
        limit: Optional[int],
    ) -> List[Any]:
        if not query:
            browse = self.browse_limit if limit is None else min(limit, self.browse_limit)
            return list(items)[:browse]

        lower_case_query = query.lower()
        results = []
        for item in items:
            text = text_of(item)
            if text is not None and lower_case_query in text.lower():
                results.append(item)
                if limit is not None and len(results) >= limit:
                    break
        return results


def preview_text(text: str, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    """First ``max_chars`` characters of ``text``, with an ellipsis if cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


# --- Text extraction ---

class TextExtractor:
    """Best-effort text extraction from raw image bytes."""

    @property
    def available(self) -> bool:
        return True

    def extract(self, image_bytes: bytes) -> Optional[str]:
        raise NotImplementedError


class NullExtractor(TextExtractor):
    """Extractor used when OCR is switched off; never finds text."""

    @property
    def available(self) -> bool:
        return False

    def extract(self, image_bytes: bytes) -> Optional[str]:
        return None


class TesseractExtractor(TextExtractor):
    """OCR through pytesseract and Pillow.

    If either library is missing the extractor reports itself unavailable
    and returns None for every image.
    """

    def __init__(self, language: str = DEFAULT_OCR_LANGUAGE) -> None:
        self.language = language
        self._pytesseract = None
        self._image = None
        self._init_error: Optional[str] = None

        try:
            import pytesseract
            from PIL import Image

            self._pytesseract = pytesseract
            self._image = Image
        except ImportError as e:
            self._init_error = str(e)

    @property
    def available(self) -> bool:
        return self._pytesseract is not None

    @property
    def init_error(self) -> Optional[str]:
        return self._init_error

    def extract(self, image_bytes: bytes) -> Optional[str]:
        if not self.available:
            return None
        try:
            with self._image.open(io.BytesIO(image_bytes)) as image:
                text = self._pytesseract.image_to_string(image, lang=self.language)
        except (self._pytesseract.TesseractError, self._pytesseract.TesseractNotFoundError) as e:
            raise ExtractionFailure(str(e)) from e
        except OSError as e:
            raise ExtractionFailure(f"Unreadable image: {e}") from e
        return text.strip()


# --- Ingestion pipeline ---

def render_note(resident_path: str, processed_at: datetime) -> str:
    """Companion note: front matter with the processing date, then the embed."""
    frontmatter = f"---\nprocessedDate: {iso_timestamp(processed_at)}\n---"
    embed_link = f"![[{resident_path}]]"
    return f"{frontmatter}\n\n{embed_link}\n\n"


class ScreenshotIngester:
    """Moves new screenshots into managed storage, writes notes and indexes them.

    Per file: relocate (best effort), create note (required), extract text
    (best effort), index, then mark the original path processed. A file that
    was moved but never marked is not seen again because it is no longer in
    the input folder, so an interrupted run does not cause double ingestion.
    """

    def __init__(
        self,
        vault: Vault,
        state: PersistedState,
        store: StateStore,
        extractor: TextExtractor,
        attachment_folder: str = DEFAULT_ATTACHMENT_FOLDER,
        extensions: Optional[Iterable[str]] = None,
        quiet: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.vault = vault
        self.state = state
        self.store = store
        self.extractor = extractor
        self.attachment_folder = attachment_folder
        self.extensions = {ext.lower().lstrip(".") for ext in (extensions or IMAGE_EXTENSIONS)}
        self.quiet = quiet
        self.clock = clock

    def ingest(
        self,
        input_folder: str,
        output_folder: str,
        tags: Optional[List[str]] = None,
    ) -> int:
        """Ingest every new image directly inside ``input_folder``.

        Returns the number of newly ingested files. State is saved once,
        after the whole batch, and only if something was ingested.
        """
        input_folder = normalize_path(input_folder)
        output_folder = normalize_path(output_folder)

        input_entry = self.vault.get_entry(input_folder)
        if input_entry is None or not input_entry.is_folder:
            raise FolderMissing(f"Screenshot input folder not found: {input_folder}")

        self._ensure_output_folder(output_folder)

        children = self.vault.list_children(input_folder)
        log_info(
            f"Found {len(children)} items in input folder {input_folder}",
            quiet=self.quiet,
        )

        processed_count = 0
        for entry in children:
            if not self.is_candidate(entry):
                continue
            if self.state.is_processed(entry.path):
                continue

            log_info(f"Processing new screenshot: {entry.path}", quiet=self.quiet)
            if self.process_file(entry, output_folder, tags):
                processed_count += 1

        if processed_count > 0:
            with self.store.lock:
                self.state.last_ingested_at = iso_timestamp(self.clock())
            self.store.save(self.state)
            log_info(
                f"{SYMBOLS['success']} Processed {processed_count} new screenshot(s).",
                quiet=self.quiet,
            )
        else:
            log_info("No new screenshots found to process.", quiet=self.quiet)

        return processed_count

    def is_candidate(self, entry: VaultEntry) -> bool:
        return entry.is_file and entry.extension.lower() in self.extensions

    def process_file(
        self,
        entry: VaultEntry,
        output_folder: str,
        tags: Optional[List[str]] = None,
    ) -> bool:
        """Run one file through the pipeline; False if it was not ingested."""
        processed_at = self.clock()
        resident_path = self._relocate(entry)

        try:
            note_path = self._create_note(entry, resident_path, output_folder, processed_at)
        except NoteCreationFailure as error:
            log_error(f"Skipping {entry.name}; it will be retried on a later run", error, quiet=self.quiet)
            return False

        extracted_text = self._extract_text(entry, resident_path)

        record = ScreenshotRecord(
            current_path=resident_path,
            note_path=note_path,
            extracted_text=extracted_text,
            processed_at=processed_at,
            tags=list(tags or []),
        )
        with self.store.lock:
            self.state.screenshot_index[resident_path] = record
            # Only after the note exists; see class docstring.
            self.state.mark_processed(entry.path)
        return True

    def _ensure_output_folder(self, output_folder: str) -> None:
        output_entry = self.vault.get_entry(output_folder)
        if output_entry is not None:
            if not output_entry.is_folder:
                raise FolderMissing(f"Screenshot note folder is not a folder: {output_folder}")
            return

        try:
            self.vault.create_folder(output_folder)
        except OSError as err:
            raise FolderMissing(
                f"Failed to create screenshot note folder: {output_folder}"
            ) from err
        log_info(f"Created screenshot note folder: {output_folder}", quiet=self.quiet)

    def _relocate(self, entry: VaultEntry) -> str:
        """Move the file into the attachment folder; returns its resident path.

        Any failure leaves the file where it was and that becomes its
        resident path.
        """
        target_folder = resolve_attachment_folder(self.attachment_folder, quiet=self.quiet)
        # Renaming inside the inbox would make the file look new on the next run.
        if target_folder == entry.parent:
            return entry.path

        try:
            return self._move_to_attachments(entry, target_folder)
        except RelocationFailure as error:
            log_warning(str(error), quiet=self.quiet)
            return entry.path

    def _move_to_attachments(self, entry: VaultEntry, target_folder: str) -> str:
        try:
            self.vault.full_path(target_folder)
        except ValueError as error:
            raise RelocationFailure(
                f"Attachment folder {target_folder} is outside the vault; "
                f"{entry.name} will not be moved"
            ) from error

        if target_folder != VAULT_ROOT and not self.vault.exists(target_folder):
            try:
                self.vault.create_folder(target_folder)
            except OSError as error:
                raise RelocationFailure(
                    f"Failed to create attachment folder {target_folder}; "
                    f"{entry.name} will not be moved: {sanitize_error_message(str(error))}"
                ) from error

        destination = allocate_path(self.vault, target_folder, entry.basename, entry.extension)
        log_info(f"Moving {entry.path} to {destination}", quiet=self.quiet)
        try:
            self.vault.rename(entry.path, destination)
        except OSError as error:
            raise RelocationFailure(
                f"Failed to move {entry.name} to attachments folder; note will link "
                f"to original: {sanitize_error_message(str(error))}"
            ) from error
        return destination

    def _create_note(
        self,
        entry: VaultEntry,
        resident_path: str,
        output_folder: str,
        processed_at: datetime,
    ) -> str:
        note_name = f"{entry.basename}_{filename_timestamp(processed_at)}.{NOTE_EXTENSION}"
        note_path = join_vault_path(output_folder, note_name)
        try:
            self.vault.create(note_path, render_note(resident_path, processed_at))
        except OSError as error:
            raise NoteCreationFailure(f"Failed to create note: {note_path}: {error}") from error
        log_info(f"Created note for screenshot: {note_path}", quiet=self.quiet)
        return note_path

    def _extract_text(self, entry: VaultEntry, resident_path: str) -> Optional[str]:
        if not self.extractor.available:
            return None
        try:
            image_bytes = self.vault.read_binary(resident_path)
            return self.extractor.extract(image_bytes)
        except Exception as error:
            log_warning(
                f"OCR failed for {entry.name}. Note created without OCR text",
                error,
                quiet=self.quiet,
            )
            return None


# --- Orchestrator ---

class Artifacting:
    """Owns one vault, one persisted state and the components working on it."""

    def __init__(
        self,
        vault_dir: Optional[str] = None,
        config_path: Optional[str] = None,
        state_path: Optional[str] = None,
        quiet: bool = False,
        extractor: Optional[TextExtractor] = None,
        use_ocr: Optional[bool] = None,
    ) -> None:
        self.quiet = quiet
        self.config = load_config(config_path)

        vault_config = self.config["vault"]
        self.vault = Vault(vault_dir or vault_config.get("dir", "."))

        state_file = Path(state_path or self.config["state"]["path"])
        if not state_file.is_absolute():
            state_file = self.vault.root / state_file
        self.store = StateStore(
            state_file,
            settings_defaults=default_settings(self.config),
            quiet=quiet,
        )
        self.state = self.store.load()
        log_info(
            f"Loaded state: {len(self.state.node_index)} loom nodes, "
            f"{len(self.state.screenshot_index)} screenshots indexed, "
            f"{len(self.state.processed_paths)} processed.",
            quiet=quiet,
        )

        if extractor is None:
            extractor = self._create_extractor(use_ocr)
        self.extractor = extractor

        search_config = self.config["search"]
        self.preview_chars = search_config.get("preview_chars", DEFAULT_PREVIEW_CHARS)
        self.tree_builder = TreeIndexBuilder(
            self.vault,
            vault_config.get("loom_data_path", DEFAULT_LOOM_DATA_PATH),
            quiet=quiet,
        )
        self.search_engine = SearchEngine(
            browse_limit=search_config.get("browse_limit", DEFAULT_BROWSE_LIMIT)
        )
        self.ingester = ScreenshotIngester(
            self.vault,
            self.state,
            self.store,
            self.extractor,
            attachment_folder=vault_config.get("attachment_folder", DEFAULT_ATTACHMENT_FOLDER),
            extensions=self.config["screenshots"].get("extensions", IMAGE_EXTENSIONS),
            quiet=quiet,
        )

        self._locks = {
            OPERATION_BUILD: threading.Lock(),
            OPERATION_INGEST: threading.Lock(),
        }

    def _create_extractor(self, use_ocr: Optional[bool]) -> TextExtractor:
        ocr_config = self.config["ocr"]
        enabled = ocr_config.get("enabled", True) if use_ocr is None else use_ocr
        if not enabled:
            return NullExtractor()

        extractor = TesseractExtractor(language=ocr_config.get("language", DEFAULT_OCR_LANGUAGE))
        if not extractor.available:
            log_warning(
                f"OCR unavailable ({extractor.init_error}); screenshots will be indexed without text",
                quiet=self.quiet,
            )
        return extractor

    def build_index(self) -> int:
        """Rebuild the node index from the loom data file.

        On failure the node index is cleared and saved, then the error is
        raised to the caller.
        """
        with self._locks[OPERATION_BUILD]:
            start_time = time.time()
            log_info("Building loom index...", quiet=self.quiet)
            try:
                source = self.tree_builder.read_source()
                new_index = self.tree_builder.build(source)
            except IndexBuildFailure:
                with self.store.lock:
                    self.state.node_index = {}
                self.store.save(self.state)
                raise

            with self.store.lock:
                self.state.node_index = new_index
                self.state.last_built_at = iso_timestamp(utc_now())
            self.store.save(self.state)

            elapsed = time.time() - start_time
            log_info(
                f"Index built successfully with {len(new_index)} nodes "
                f"in {elapsed:.2f} seconds.",
                quiet=self.quiet,
            )
            return len(new_index)

    def search_nodes(self, query: str, limit: Optional[int] = None) -> List[ArtifactNode]:
        return self.search_engine.search(query, self.state.node_index, limit)

    def search_screenshots(self, query: str, limit: Optional[int] = None) -> List[ScreenshotRecord]:
        return self.search_engine.search_screenshots(query, self.state.screenshot_index, limit)

    def process_screenshots(
        self,
        input_folder: Optional[str] = None,
        output_folder: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> int:
        """Ingest new screenshots from the configured (or given) folders."""
        with self._locks[OPERATION_INGEST]:
            log_info("Starting screenshot processing...", quiet=self.quiet)
            settings = self.state.settings
            return self.ingester.ingest(
                input_folder or settings["screenshot_input_folder"],
                output_folder or settings["screenshot_note_folder"],
                tags=tags,
            )

    def get_stats(self) -> Dict[str, Any]:
        """Counts and timestamps describing the current state."""
        nodes = self.state.node_index.values()
        screenshots = self.state.screenshot_index.values()
        return {
            "vault_path": str(self.vault.root),
            "state_path": str(self.store.state_path),
            "loom_data_path": self.tree_builder.loom_data_path,
            "node_count": len(self.state.node_index),
            "document_count": len({node.document_path for node in nodes}),
            "bookmarked_count": sum(1 for node in nodes if node.bookmarked),
            "screenshot_count": len(self.state.screenshot_index),
            "screenshots_with_text": sum(1 for record in screenshots if record.extracted_text),
            "processed_count": len(self.state.processed_paths),
            "settings": dict(self.state.settings),
            "ocr_available": self.extractor.available,
            "last_built_at": self.state.last_built_at,
            "last_ingested_at": self.state.last_ingested_at,
        }

    def interactive_search(self) -> None:
        """Interactive node search mode."""
        print(f"\n{SYMBOLS['search']} Interactive Search Mode")
        print("Type your queries (or 'quit' to exit)")
        print("-" * 50)

        while True:
            try:
                query = input("\nQuery: ").strip()
                if query.lower() in ["quit", "exit", "q"]:
                    break

                results = self.search_nodes(query)
                if not results:
                    print("No results found.")
                    continue

                print(f"\n{SYMBOLS['found']} Found {len(results)} results:")
                for i, node in enumerate(results, 1):
                    print(f"\n{i}. {node.document_path} [{node.id}]")
                    print(f"   {preview_text(node.text, self.preview_chars)}")

            except (KeyboardInterrupt, EOFError):
                break

        print(f"\n{SYMBOLS['bye']} Goodbye!")


# --- Command line ---

def parse_args(argv: Optional[List[str]] = None) -> Any:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Artifacting v1.0.0 - loom node index and screenshot ingestion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Loom index:
    %(prog)s build                              # Rebuild the node index from loom data
    %(prog)s search "your search term"          # Case-insensitive substring search
    %(prog)s search                             # Browse the first indexed nodes

  Screenshots:
    %(prog)s ingest                             # Ingest new screenshots from the inbox
    %(prog)s ingest --tag receipts              # Tag this batch
    %(prog)s screenshots "invoice"              # Search OCR text of screenshots

  Other:
    %(prog)s sync                               # build then ingest
    %(prog)s status --json                      # Counts and timestamps as JSON
        """,
    )

    parser.add_argument(
        "command",
        choices=[
            "build",
            "search",
            "ingest",
            "screenshots",
            "sync",
            "status",
            "interactive",
        ],
        help="Command to execute",
    )
    parser.add_argument("query", nargs="*", help="Search query (for search commands)")

    # Options
    parser.add_argument("--vault", help="Vault root directory (default: config or .)")
    parser.add_argument(
        "--config", help=f"Path to config file (default: {DEFAULT_CONFIG_FILENAME})"
    )
    parser.add_argument(
        "--state", help=f"State file, relative to the vault (default: {DEFAULT_STATE_PATH})"
    )
    parser.add_argument("--input-folder", help="Screenshot input folder for this run")
    parser.add_argument("--note-folder", help="Screenshot note folder for this run")
    parser.add_argument(
        "--tag", action="append", default=[], help="Tag to attach to ingested screenshots"
    )
    parser.add_argument("--limit", type=int, help="Maximum number of search results")

    # Flags
    parser.add_argument("--no-ocr", action="store_true", help="Skip text extraction")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument("--version", action="version", version=f"artifacting {__version__}")

    return parser.parse_args(argv)


# Command Pattern Implementation
class Command:
    """Base command interface."""

    def execute(self, args: Any, app: Artifacting) -> None:
        """Execute the command."""
        raise NotImplementedError


class BuildCommand(Command):
    """Rebuild the loom node index."""

    def execute(self, args: Any, app: Artifacting) -> None:
        count = app.build_index()
        print(f"{SYMBOLS['success']} Loom data indexing complete: {count} nodes.")


class SearchCommand(Command):
    """Search loom nodes."""

    def execute(self, args: Any, app: Artifacting) -> None:
        if not app.state.node_index:
            print('Index is empty. Run "build" first.')
            return

        query = " ".join(args.query)
        results = app.search_nodes(query, limit=args.limit)

        if args.json:
            print(json.dumps([node.to_dict() for node in results], indent=2, ensure_ascii=False))
            return

        if not results:
            print("No results found.")
            return

        print(f"\n{SYMBOLS['search']} Search results for: '{query}'")
        print("=" * 50)
        for i, node in enumerate(results, 1):
            marker = " *" if node.bookmarked else ""
            print(f"\n{i}. {node.document_path} [{node.id}]{marker}")
            print(f"   {preview_text(node.text, app.preview_chars)}")


class IngestCommand(Command):
    """Process new screenshots."""

    def execute(self, args: Any, app: Artifacting) -> None:
        app.process_screenshots(
            input_folder=args.input_folder,
            output_folder=args.note_folder,
            tags=args.tag,
        )


class ScreenshotSearchCommand(Command):
    """Search the screenshot index by extracted text."""

    def execute(self, args: Any, app: Artifacting) -> None:
        query = " ".join(args.query)
        results = app.search_screenshots(query, limit=args.limit)

        if args.json:
            print(json.dumps([record.to_dict() for record in results], indent=2, ensure_ascii=False))
            return

        if not results:
            print("No results found.")
            return

        print(f"\n{SYMBOLS['search']} Screenshot results for: '{query}'")
        print("=" * 50)
        for i, record in enumerate(results, 1):
            print(f"\n{i}. {record.current_path} -> {record.note_path}")
            if record.extracted_text:
                print(f"   {preview_text(record.extracted_text, app.preview_chars)}")


class SyncCommand(Command):
    """Build the index, then ingest; the same sequence as a startup run."""

    def execute(self, args: Any, app: Artifacting) -> None:
        try:
            BuildCommand().execute(args, app)
        except IndexBuildFailure as error:
            log_warning("Loom index not built", error, quiet=args.quiet)
        IngestCommand().execute(args, app)


class StatusCommand(Command):
    """Show index and state statistics."""

    def execute(self, args: Any, app: Artifacting) -> None:
        stats = app.get_stats()
        if args.json:
            print(json.dumps(stats, indent=2))
            return

        print("Artifacting Status:")
        print(f"  Vault: {stats['vault_path']}")
        print(f"  State file: {stats['state_path']}")
        print(f"  Loom data: {stats['loom_data_path']}")
        print(f"  Loom nodes: {stats['node_count']} in {stats['document_count']} documents")
        print(f"  Bookmarked nodes: {stats['bookmarked_count']}")
        print(
            f"  Screenshots: {stats['screenshot_count']} "
            f"({stats['screenshots_with_text']} with text)"
        )
        print(f"  Processed paths: {stats['processed_count']}")
        print(f"  Input folder: {stats['settings']['screenshot_input_folder']}")
        print(f"  Note folder: {stats['settings']['screenshot_note_folder']}")
        print(f"  OCR: {'available' if stats['ocr_available'] else 'unavailable'}")
        print(f"  Last build: {stats['last_built_at'] or 'never'}")
        print(f"  Last ingest: {stats['last_ingested_at'] or 'never'}")


class InteractiveCommand(Command):
    """Interactive search mode."""

    def execute(self, args: Any, app: Artifacting) -> None:
        app.interactive_search()


class CommandFactory:
    """Factory for creating command instances."""

    _commands = {
        "build": BuildCommand,
        "search": SearchCommand,
        "ingest": IngestCommand,
        "screenshots": ScreenshotSearchCommand,
        "sync": SyncCommand,
        "status": StatusCommand,
        "interactive": InteractiveCommand,
    }

    @classmethod
    def create_command(cls, command_name: str) -> Command:
        """Create a command instance."""
        command_class = cls._commands.get(command_name)
        if command_class is None:
            raise ValueError(f"Unknown command: {command_name}")
        return command_class()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point using Command pattern."""
    args = parse_args(argv)

    try:
        command = CommandFactory.create_command(args.command)
        app = Artifacting(
            vault_dir=args.vault,
            config_path=args.config,
            state_path=args.state,
            quiet=args.quiet or args.json,
            use_ocr=False if args.no_ocr else None,
        )
        command.execute(args, app)

    except ArtifactingError as e:
        log_error(str(e), quiet=False)
        sys.exit(1)
    except ValueError as e:
        log_error(str(e), quiet=args.quiet)
        sys.exit(1)
    except Exception as e:
        log_error(f"Unexpected error executing command '{args.command}'", e, quiet=args.quiet)
        sys.exit(1)


if __name__ == "__main__":
    main()
