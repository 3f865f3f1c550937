#!/usr/bin/env python3
"""
Book Organizer
==============
Watches a download directory for newly-arrived ebooks, identifies each one,
and files it under a canonical "Title - Author" name.

Pipeline Order:
  1. Directory watcher (debounced) admits new .pdf / .epub files
  2. Identifier extraction: ISBN from metadata and the first pages, else a title
  3. Google Books lookup (bounded retry with exponential backoff)
  4. Move + rename into <watch_dir>/Books
  5. Metadata write-back (PDF only, best effort)

Supported Formats: .pdf, .epub

Setup:
  python -m venv ~/.venvs/book-organizer
  source ~/.venvs/book-organizer/bin/activate
  pip install -e .

Usage:
  python book_organizer.py ~/Downloads [--config book_organizer.yaml] [options]
  python book_organizer.py ~/Downloads --once
  python book_organizer.py ~/Downloads --resolve ~/Downloads/scan.pdf 978-0-306-40615-7

  Run with --help for full options.
"""

import logging
import os
import re
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests
from watchdog.events import (EVENT_TYPE_CLOSED, EVENT_TYPE_CREATED,
                             EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED,
                             FileSystemEventHandler)
from watchdog.observers import Observer

# =============================================================================
# CONFIGURATION & CONSTANTS
# =============================================================================

SUPPORTED_EXTENSIONS = {'.pdf', '.epub'}
BOOKS_DIR_NAME = "Books"
LOGGER_NAME = "book_organizer"

GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"
USER_AGENT = "BookOrganizer/1.0"
UNKNOWN_AUTHOR = "Unknown Author"

DEFAULT_WORKERS = 4
DEBOUNCE_SECONDS = 1.0
MAX_ATTEMPTS = 3
INITIAL_BACKOFF = 1.0
REQUEST_TIMEOUT = 10

# Identifier extraction
DEFAULT_SCAN_PAGES = 10
TITLE_MIN_LENGTH = 5            # exclusive
TITLE_MAX_LENGTH = 100          # exclusive

ILLEGAL_FILENAME_CHARS = '/\\:?%*|"<>'
ISBN_CHARS = '0123456789X'

# PDF document-info keys scanned for ISBNs, in scan order
PDF_SCAN_FIELDS = ('title', 'author', 'subject', 'keywords', 'producer', 'creator')
# Keys PyMuPDF accepts in set_metadata()
PDF_INFO_KEYS = ('title', 'author', 'subject', 'keywords', 'creator', 'producer',
                 'creationDate', 'modDate')


# =============================================================================
# DATA MODEL
# =============================================================================

class FileStatus(Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    PROCESSED = 'processed'
    FAILED = 'failed'


ALLOWED_TRANSITIONS = {
    FileStatus.PENDING: {FileStatus.PROCESSING},
    FileStatus.PROCESSING: {FileStatus.PROCESSED, FileStatus.FAILED},
    FileStatus.FAILED: {FileStatus.PROCESSING},
    FileStatus.PROCESSED: set(),
}


class InvalidTransition(ValueError):
    pass


class UnsupportedFormat(ValueError):
    pass


@dataclass
class TrackedFile:
    source_path: str
    original_name: str
    new_name: Optional[str] = None
    status: FileStatus = FileStatus.PENDING


class IdentifierKind(Enum):
    ISBN = 'isbn'
    TITLE = 'title'


@dataclass(frozen=True)
class Identifier:
    kind: IdentifierKind
    value: str

    @classmethod
    def isbn(cls, value: str) -> 'Identifier':
        return cls(IdentifierKind.ISBN, value)

    @classmethod
    def title(cls, value: str) -> 'Identifier':
        return cls(IdentifierKind.TITLE, value)

    def __str__(self):
        return f"{self.kind.value}:{self.value}"


@dataclass
class ResolvedMetadata:
    """Catalog answer for one identifier: the display name plus the volume fields
    later written back into the file. Unrecognised volumeInfo keys land in `extra`."""
    display_name: str
    title: str
    authors: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# LOGGING SETUP
# =============================================================================

class ColorFormatter(logging.Formatter):
    COLORS = {
        'DEBUG': '\033[90m', 'INFO': '\033[0m', 'WARNING': '\033[33m',
        'ERROR': '\033[31m', 'CRITICAL': '\033[41m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"{color}{message}{self.RESET}"


def setup_logging(log_dir: str, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    shutdown_logging(logger)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    file_format = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    fh = logging.FileHandler(os.path.join(log_dir, f'organizer_{timestamp}.log'), encoding='utf-8')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_format)
    logger.addHandler(fh)

    eh = logging.FileHandler(os.path.join(log_dir, f'errors_{timestamp}.log'), encoding='utf-8')
    eh.setLevel(logging.ERROR)
    eh.setFormatter(file_format)
    logger.addHandler(eh)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(ColorFormatter())
    logger.addHandler(ch)

    return logger


def shutdown_logging(logger: logging.Logger):
    """Flush and close every handler attached to `logger`."""
    for handler in list(logger.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            logger.removeHandler(handler)


# =============================================================================
# ISBN VALIDATION
# =============================================================================

# "ISBN", "ISBN-10:", "ISBN 13" ... followed by the number itself
ISBN_LABELLED_RE = re.compile(
    r'\bISBN(?:[- ]?1[03])?:?\s*'
    r'(?P<isbn>(?:97[89][- ]?)?(?:\d[- ]?){9}[\dX])\b',
    re.IGNORECASE)
# Bare 10 or 13 character runs, hyphens allowed between digits
ISBN_BARE_RE = re.compile(r'\b(?:97[89]-?)?\d(?:-?\d){8}-?[\dX]\b', re.IGNORECASE)


def clean_candidate(text: str) -> str:
    return ''.join(ch for ch in text if ch.isalnum()).upper()


def normalize_isbn(candidate: str) -> str:
    return ''.join(ch for ch in candidate.upper() if ch in ISBN_CHARS)


def extract_candidates(text: str) -> List[str]:
    """Cleaned ISBN-like substrings of `text`, de-duplicated, in order of first occurrence."""
    if not text:
        return []
    found = []
    for match in ISBN_LABELLED_RE.finditer(text):
        found.append((match.start('isbn'), clean_candidate(match.group('isbn'))))
    for match in ISBN_BARE_RE.finditer(text):
        found.append((match.start(), clean_candidate(match.group(0))))
    found.sort(key=lambda item: item[0])
    return list(dict.fromkeys(candidate for _, candidate in found if candidate))


def is_valid_isbn10(isbn: str) -> bool:
    if len(isbn) != 10:
        return False
    total = 0
    for index, ch in enumerate(isbn):
        if ch == 'X' and index == 9:
            value = 10
        elif ch in '0123456789':
            value = int(ch)
        else:
            return False
        total += (10 - index) * value
    return total % 11 == 0


def is_valid_isbn13(isbn: str) -> bool:
    if len(isbn) != 13:
        return False
    total = 0
    for index, ch in enumerate(isbn):
        if ch not in '0123456789':
            return False
        total += int(ch) * (1 if index % 2 == 0 else 3)
    return total % 10 == 0


def is_valid_isbn(candidate: str) -> bool:
    if not candidate:
        return False
    digits = normalize_isbn(candidate)
    if len(digits) == 10:
        return is_valid_isbn10(digits)
    if len(digits) == 13:
        return is_valid_isbn13(digits)
    return False


def first_valid_isbn(candidates) -> Optional[str]:
    for candidate in candidates:
        if is_valid_isbn(candidate):
            return normalize_isbn(candidate)
    return None


# =============================================================================
# FORMAT ADAPTERS
# =============================================================================

class DocumentAdapter:
    """Read-only view of an ebook container.

    Subclasses yield (field, value) metadata pairs and body text blocks
    (pages or sections) in document order.
    """

    def __init__(self, filepath: str):
        self.filepath = filepath

    def metadata_values(self) -> Iterator[Tuple[str, str]]:
        raise NotImplementedError

    def title(self) -> Optional[str]:
        raise NotImplementedError

    def text_blocks(self) -> Iterator[str]:
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class PdfDocumentAdapter(DocumentAdapter):
    def __init__(self, filepath: str):
        super().__init__(filepath)
        import fitz
        self._doc = fitz.open(filepath)

    def metadata_values(self):
        meta = self._doc.metadata or {}
        for key in PDF_SCAN_FIELDS:
            value = meta.get(key)
            if value:
                yield key, value

    def title(self):
        value = (self._doc.metadata or {}).get('title') or ''
        return value.strip() or None

    def text_blocks(self):
        for page in self._doc:
            yield page.get_text()

    def close(self):
        self._doc.close()


class EpubDocumentAdapter(DocumentAdapter):
    DC_FIELDS = ('title', 'creator', 'subject', 'description', 'publisher', 'identifier')
    DOCUMENT_SUFFIXES = ('.xhtml', '.html', '.htm')

    def __init__(self, filepath: str):
        super().__init__(filepath)
        from ebooklib import epub
        self._book = epub.read_epub(filepath, options={'ignore_ncx': True})

    def metadata_values(self):
        for name in self.DC_FIELDS:
            for value, _attrs in self._book.get_metadata('DC', name):
                if value:
                    yield name, value

    def title(self):
        for value, _attrs in self._book.get_metadata('DC', 'title'):
            if value and value.strip():
                return value.strip()
        return None

    def entries(self, suffixes: Tuple[str, ...] = DOCUMENT_SUFFIXES):
        for item in self._book.get_items():
            if item.get_name().lower().endswith(suffixes):
                yield item

    def text_blocks(self):
        from bs4 import BeautifulSoup
        for item in self.entries():
            soup = BeautifulSoup(item.get_content(), 'html.parser')
            yield soup.get_text(separator='\n', strip=True)


DOCUMENT_ADAPTERS = {
    '.pdf': PdfDocumentAdapter,
    '.epub': EpubDocumentAdapter,
}


def open_document(filepath: str) -> DocumentAdapter:
    ext = Path(filepath).suffix.lower()
    adapter = DOCUMENT_ADAPTERS.get(ext)
    if adapter is None:
        raise UnsupportedFormat(f"Unsupported ebook format: {ext or filepath}")
    return adapter(filepath)


# =============================================================================
# IDENTIFIER EXTRACTION
# =============================================================================

class IdentifierExtractor:
    """Finds the best identifier for a file: a checksum-valid ISBN, else a title.

    Metadata fields are scanned first, then the first `scan_pages` text blocks.
    With `deep_scan` the rest of the document is searched when that window has
    no valid ISBN. When several valid ISBNs exist the first one in scan order wins.
    """

    def __init__(self, logger: logging.Logger, scan_pages: int = DEFAULT_SCAN_PAGES,
                 deep_scan: bool = True, title_min_length: int = TITLE_MIN_LENGTH,
                 title_max_length: int = TITLE_MAX_LENGTH,
                 opener: Callable[[str], DocumentAdapter] = open_document):
        self.log = logger
        self.scan_pages = scan_pages
        self.deep_scan = deep_scan
        self.title_min_length = title_min_length
        self.title_max_length = title_max_length
        self.opener = opener

    def extract(self, filepath: str) -> Optional[Identifier]:
        name = os.path.basename(filepath)
        try:
            with self.opener(filepath) as doc:
                return self.extract_from(doc, name)
        except Exception as e:
            self.log.warning(f"Could not read {name}: {e}")
            return None

    def extract_from(self, doc: DocumentAdapter, name: str = "") -> Optional[Identifier]:
        isbn = self.find_isbn(doc)
        if isbn:
            self.log.info(f"ISBN found in {name}: {isbn}")
            return Identifier.isbn(isbn)
        title = self.find_title(doc)
        if title:
            self.log.info(f"Title found in {name}: {title}")
            return Identifier.title(title)
        self.log.info(f"No identifier found in {name}")
        return None

    def find_isbn(self, doc: DocumentAdapter) -> Optional[str]:
        for _field, value in doc.metadata_values():
            isbn = first_valid_isbn(extract_candidates(value))
            if isbn:
                return isbn
        for index, block in enumerate(doc.text_blocks()):
            if index == self.scan_pages:
                if not self.deep_scan:
                    break
                self.log.debug(f"No ISBN in the first {self.scan_pages} pages, scanning the rest")
            isbn = first_valid_isbn(extract_candidates(block))
            if isbn:
                return isbn
        return None

    def find_title(self, doc: DocumentAdapter) -> Optional[str]:
        title = doc.title()
        if title:
            return title
        first_block = next(iter(doc.text_blocks()), None)
        if not first_block:
            return None
        # Heuristic: first line of plausible title length on the first page
        for line in first_block.splitlines():
            line = line.strip()
            if self.title_min_length < len(line) < self.title_max_length:
                return line
        return None


# =============================================================================
# CATALOG CLIENT (Google Books)
# =============================================================================

def build_query(identifier: Identifier) -> str:
    if identifier.kind is IdentifierKind.ISBN:
        return f"isbn:{identifier.value}"
    return f"intitle:{identifier.value}"


def format_display_name(title: str, authors: List[str]) -> str:
    return f"{title} - {', '.join(authors or [UNKNOWN_AUTHOR])}"


def _string_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def parse_volume(data) -> Optional[ResolvedMetadata]:
    """First search result of a volumes response, or None when the shape is wrong."""
    if not isinstance(data, dict):
        return None
    items = data.get('items')
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return None
    vol = items[0].get('volumeInfo')
    if not isinstance(vol, dict):
        return None
    title = vol.get('title')
    if not isinstance(title, str) or not title.strip():
        return None
    authors = _string_list(vol.get('authors'))
    categories = _string_list(vol.get('categories'))
    extra = {k: v for k, v in vol.items() if k not in ('title', 'authors', 'categories')}
    return ResolvedMetadata(
        display_name=format_display_name(title, authors),
        title=title, authors=authors, categories=categories, extra=extra)


class CatalogClient:
    RETRY_STATUS = {429, 500, 502, 503, 504}

    def __init__(self, logger: logging.Logger, api_key: Optional[str] = None,
                 max_attempts: int = MAX_ATTEMPTS, initial_backoff: float = INITIAL_BACKOFF,
                 timeout: float = REQUEST_TIMEOUT, session: Optional[requests.Session] = None):
        self.log = logger
        self.api_key = api_key
        self.max_attempts = max(1, max_attempts)
        self.initial_backoff = initial_backoff
        self.timeout = timeout
        self._session = session
        self._session_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            with self._session_lock:
                if self._session is None:
                    self._session = requests.Session()
                    self._session.headers.update({'User-Agent': USER_AGENT})
        return self._session

    def resolve(self, identifier: Identifier) -> Optional[ResolvedMetadata]:
        query = build_query(identifier)
        params = {'q': query}
        if self.api_key:
            params['key'] = self.api_key
        resp = self._request_with_retry(params)
        if resp is None:
            return None
        try:
            data = resp.json()
        except ValueError as e:
            self.log.warning(f"Unreadable catalog response for {query}: {e}")
            return None
        resolved = parse_volume(data)
        if resolved is None:
            self.log.info(f"No catalog match for {query}")
        else:
            self.log.info(f"Catalog: {query} -> {resolved.display_name}")
        return resolved

    def _request_with_retry(self, params: Dict[str, str]) -> Optional[requests.Response]:
        delay = self.initial_backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.session.get(GOOGLE_BOOKS_URL, params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                reason = str(e) or e.__class__.__name__
            else:
                if resp.status_code not in self.RETRY_STATUS:
                    # Other 4xx errors (400, 403, 404) are not worth retrying
                    if 400 <= resp.status_code < 500:
                        self.log.warning(f"Catalog rejected {params['q']!r}: HTTP {resp.status_code}")
                        return None
                    return resp
                reason = f"HTTP {resp.status_code}"
            self.log.warning(f"Catalog request failed ({attempt}/{self.max_attempts}): {reason}")
            if attempt < self.max_attempts:
                time.sleep(delay)
                delay *= 2
        self.log.error(f"Catalog lookup gave up after {self.max_attempts} attempts: {params['q']}")
        return None


# =============================================================================
# METADATA WRITER
# =============================================================================

class MetadataWriter:
    def __init__(self, logger: logging.Logger):
        self.log = logger

    def write(self, filepath: str, resolved: ResolvedMetadata) -> bool:
        ext = Path(filepath).suffix.lower()
        if ext == '.pdf':
            return self._write_pdf_meta(filepath, resolved)
        if ext == '.epub':
            return self._write_epub_meta(filepath, resolved)
        return False

    def _write_pdf_meta(self, filepath, resolved):
        name = os.path.basename(filepath)
        try:
            import fitz
            doc = fitz.open(filepath)
            try:
                current = doc.metadata or {}
                updated = {key: current.get(key) or '' for key in PDF_INFO_KEYS}
                updated.update({
                    'title': resolved.title,
                    'author': ', '.join(resolved.authors),
                    'subject': ', '.join(resolved.categories),
                })
                doc.set_metadata(updated)
                doc.saveIncr()
            finally:
                doc.close()
        except Exception as e:
            self.log.warning(f"PDF metadata write failed for {name}: {e}")
            return False
        self.log.info(f"Updated PDF metadata for {name}")
        return True

    def _write_epub_meta(self, filepath, resolved):
        # TODO: rewrite dc:title / dc:creator / dc:subject in the OPF package document
        self.log.info(f"EPUB metadata write-back is not implemented, "
                      f"{os.path.basename(filepath)} left unchanged")
        return False


# =============================================================================
# STATUS STORE
# =============================================================================

class StatusStore:
    """Ordered collection of tracked files.

    Every mutation and every subscriber notification runs under one lock, so
    subscribers see changes in the order they happened. Subscribers receive a
    copy of the changed entry.
    """

    def __init__(self, logger: logging.Logger):
        self.log = logger
        self._files: Dict[str, TrackedFile] = {}
        self._lock = threading.RLock()
        self._subscribers: List[Callable[[TrackedFile], None]] = []

    def __len__(self):
        with self._lock:
            return len(self._files)

    def subscribe(self, callback: Callable[[TrackedFile], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def track(self, path: str) -> Tuple[TrackedFile, bool]:
        with self._lock:
            entry = self._files.get(path)
            if entry is not None:
                return replace(entry), False
            entry = TrackedFile(source_path=path, original_name=os.path.basename(path))
            self._files[path] = entry
            self._publish(entry)
            return replace(entry), True

    def is_tracked(self, path: str) -> bool:
        with self._lock:
            return path in self._files

    def get(self, path: str) -> Optional[TrackedFile]:
        with self._lock:
            entry = self._files.get(path)
            return replace(entry) if entry else None

    def snapshot(self) -> List[TrackedFile]:
        with self._lock:
            return [replace(entry) for entry in self._files.values()]

    def set_status(self, path: str, status: FileStatus, new_name: Optional[str] = None) -> TrackedFile:
        with self._lock:
            entry = self._files[path]
            if status not in ALLOWED_TRANSITIONS[entry.status]:
                raise InvalidTransition(
                    f"{entry.original_name}: {entry.status.value} -> {status.value}")
            entry.status = status
            if new_name is not None:
                entry.new_name = new_name
            self._publish(entry)
            return replace(entry)

    def mark_processed(self, path: str, new_name: str) -> TrackedFile:
        return self.set_status(path, FileStatus.PROCESSED, new_name=new_name)

    def compare_and_set(self, path: str, expected: FileStatus, status: FileStatus) -> bool:
        """Move `path` to `status` only if it is currently in `expected`."""
        with self._lock:
            entry = self._files.get(path)
            if entry is None or entry.status is not expected:
                return False
            self.set_status(path, status)
            return True

    def counts(self) -> Dict[str, int]:
        with self._lock:
            result = {status.value: 0 for status in FileStatus}
            for entry in self._files.values():
                result[entry.status.value] += 1
            return result

    def _publish(self, entry: TrackedFile):
        for callback in list(self._subscribers):
            try:
                callback(replace(entry))
            except Exception as e:
                self.log.warning(f"Status subscriber failed for {entry.original_name}: {e}")


class StatusReporter:
    """Writes one console line per status change."""
    ICONS = {
        FileStatus.PENDING: '\033[90m… pending\033[0m',
        FileStatus.PROCESSING: '\033[36m↻ processing\033[0m',
        FileStatus.PROCESSED: '\033[32m✓ processed\033[0m',
        FileStatus.FAILED: '\033[31m✗ failed\033[0m',
    }

    def __init__(self, logger: logging.Logger):
        self.log = logger

    def __call__(self, entry: TrackedFile):
        line = f"{self.ICONS[entry.status]}  {entry.original_name}"
        if entry.new_name:
            line += f"  \033[90m→\033[0m {entry.new_name}"
        self.log.info(line)


# =============================================================================
# FILE PROCESSING COORDINATOR
# =============================================================================

def sanitize_filename(name: str) -> str:
    for ch in ILLEGAL_FILENAME_CHARS:
        name = name.replace(ch, '_')
    return name


class FileProcessingCoordinator:
    """Runs extraction -> lookup -> move -> metadata write for each admitted file.

    `_in_flight` maps a source path to its running task and is the only
    single-flight gate: insert-if-absent on submit, removal when the task ends.
    """

    def __init__(self, logger: logging.Logger, store: StatusStore, extractor: IdentifierExtractor,
                 catalog: CatalogClient, writer: MetadataWriter, books_dir: str,
                 workers: int = DEFAULT_WORKERS):
        self.log = logger
        self.store = store
        self.extractor = extractor
        self.catalog = catalog
        self.writer = writer
        self.books_dir = os.path.abspath(books_dir)
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers),
                                            thread_name_prefix='book-organizer')
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def is_in_books_dir(self, path: str) -> bool:
        path = os.path.abspath(path)
        return os.path.commonpath([path, self.books_dir]) == self.books_dir

    def is_in_flight(self, path: str) -> bool:
        with self._lock:
            return os.path.abspath(path) in self._in_flight

    def admit(self, path: str, identifier: Optional[Identifier] = None) -> bool:
        path = os.path.abspath(path)
        if self.is_in_books_dir(path):
            self.log.debug(f"Skipping {os.path.basename(path)}: already in {self.books_dir}")
            return False
        _entry, created = self.store.track(path)
        if not created:
            return False
        return self.submit(path, identifier)

    def submit(self, path: str, identifier: Optional[Identifier] = None) -> bool:
        path = os.path.abspath(path)
        with self._lock:
            if path in self._in_flight:
                self.log.debug(f"{os.path.basename(path)} is already being processed")
                return False
            try:
                future = self._executor.submit(self._run, path, identifier)
            except RuntimeError as e:
                self.log.warning(f"Not processing {os.path.basename(path)}: {e}")
                return False
            self._in_flight[path] = future
        return True

    def _run(self, path, identifier):
        try:
            self.process(path, identifier)
        finally:
            with self._lock:
                self._in_flight.pop(path, None)

    def process(self, path: str, identifier: Optional[Identifier] = None):
        name = os.path.basename(path)
        try:
            entry, _ = self.store.track(path)
            if entry.status is not FileStatus.PROCESSING:
                self.store.set_status(path, FileStatus.PROCESSING)

            if identifier is None:
                identifier = self.extractor.extract(path)
                if identifier is None:
                    self.log.warning(f"No identifier found for {name}")
                    self._fail(path)
                    return

            resolved = self.catalog.resolve(identifier)
            if resolved is None:
                self.log.warning(f"No catalog result for {name} ({identifier})")
                self._fail(path)
                return

            try:
                destination = self.move_to_destination(path, resolved.display_name)
            except OSError as e:
                self.log.error(f"Could not move {name} into {self.books_dir}: {e}")
                self._fail(path)
                return

            try:
                self.writer.write(destination, resolved)
            except Exception as e:
                self.log.warning(f"Metadata write-back failed for {os.path.basename(destination)}: {e}")

            self.store.mark_processed(path, os.path.basename(destination))
        except Exception:
            self.log.exception(f"Unexpected error while processing {name}")
            self._fail(path)

    def _fail(self, path):
        self.store.compare_and_set(path, FileStatus.PROCESSING, FileStatus.FAILED)

    def move_to_destination(self, path: str, display_name: str) -> str:
        os.makedirs(self.books_dir, exist_ok=True)
        destination = os.path.join(self.books_dir, sanitize_filename(display_name) + Path(path).suffix)
        os.replace(path, destination)
        self.log.info(f"Moved {os.path.basename(path)} -> {destination}")
        return destination

    def resolve_manually(self, path: str, raw_identifier: str) -> bool:
        """Re-run a failed file with an operator-supplied ISBN, skipping extraction."""
        path = os.path.abspath(path)
        name = os.path.basename(path)
        entry = self.store.get(path)
        if entry is None or entry.status is not FileStatus.FAILED:
            self.log.warning(f"Manual resolution is only available for failed files: {name}")
            return False
        isbn = normalize_isbn(clean_candidate(raw_identifier or ''))
        if not is_valid_isbn(isbn):
            self.log.warning(f"Invalid ISBN entered for {name}: {raw_identifier!r}")
            return False
        if not self.store.compare_and_set(path, FileStatus.FAILED, FileStatus.PROCESSING):
            return False
        if not self.submit(path, Identifier.isbn(isbn)):
            self.log.warning(f"{name} is still finishing its previous attempt, try again")
            self._fail(path)
            return False
        self.log.info(f"Manual ISBN {isbn} accepted for {name}")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is in flight. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._in_flight.values())
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _done, not_done = wait_futures(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


# =============================================================================
# DIRECTORY WATCHER
# =============================================================================

class DirectoryEventHandler(FileSystemEventHandler):
    TRIGGER_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, EVENT_TYPE_CLOSED}

    def __init__(self, watcher: 'DirectoryWatcher'):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.event_type in self.TRIGGER_EVENTS:
            self.watcher.notify()


class DirectoryWatcher:
    """Debounced rescans of one directory.

    Each change event restarts the debounce timer; a rescan runs only after
    `debounce_seconds` without further events, so files still being downloaded
    are not picked up mid-write.
    """

    def __init__(self, logger: logging.Logger, watch_dir: str, coordinator: FileProcessingCoordinator,
                 debounce_seconds: float = DEBOUNCE_SECONDS, observer_factory=Observer):
        self.log = logger
        self.watch_dir = os.path.abspath(watch_dir)
        self.coordinator = coordinator
        self.debounce_seconds = debounce_seconds
        self._observer_factory = observer_factory
        self._observer = None
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        os.makedirs(self.coordinator.books_dir, exist_ok=True)
        self.log.info(f"Scanning {self.watch_dir} for existing files")
        self.rescan()
        observer = self._observer_factory()
        observer.schedule(DirectoryEventHandler(self), self.watch_dir, recursive=False)
        with self._lock:
            self._running = True
        observer.start()
        self._observer = observer
        self.log.info(f"Watching {self.watch_dir}")

    def stop(self):
        with self._lock:
            self._running = False
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        self.log.info(f"Stopped watching {self.watch_dir}")

    def notify(self):
        with self._lock:
            if not self._running:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.debounce_seconds, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self, generation: int):
        with self._lock:
            if not self._running or generation != self._generation:
                return
            self._timer = None
        self.log.debug(f"{self.watch_dir} quiet for {self.debounce_seconds}s, rescanning")
        self.rescan()

    def rescan(self) -> int:
        try:
            names = sorted(os.listdir(self.watch_dir))
        except OSError as e:
            self.log.error(f"Failed to list {self.watch_dir}: {e}")
            return 0
        admitted = 0
        for name in names:
            if name.startswith('.') or Path(name).suffix.lower() not in SUPPORTED_EXTENSIONS:
                continue
            path = os.path.join(self.watch_dir, name)
            if not os.path.isfile(path):
                continue
            if self.coordinator.admit(path):
                self.log.info(f"New file: {name}")
                admitted += 1
        return admitted


# =============================================================================
# ORGANIZER
# =============================================================================

class BookOrganizer:
    def __init__(self, config, logger: logging.Logger, session: Optional[requests.Session] = None):
        self.config = config
        self.log = logger
        self.watch_dir = os.path.abspath(os.path.expanduser(config.watch_dir))
        self.books_dir = os.path.join(self.watch_dir, config.books_dir_name or BOOKS_DIR_NAME)

        self.store = StatusStore(logger)
        self.extractor = IdentifierExtractor(
            logger, scan_pages=config.scan_pages, deep_scan=config.deep_scan,
            title_min_length=config.title_min_length, title_max_length=config.title_max_length)
        self.catalog = CatalogClient(
            logger, api_key=config.google_api_key, max_attempts=config.max_attempts,
            initial_backoff=config.initial_backoff, timeout=config.request_timeout, session=session)
        self.writer = MetadataWriter(logger)
        self.coordinator = FileProcessingCoordinator(
            logger, self.store, self.extractor, self.catalog, self.writer,
            self.books_dir, workers=config.workers)
        self.watcher = DirectoryWatcher(logger, self.watch_dir, self.coordinator,
                                        debounce_seconds=config.debounce_seconds)
        self._unsubscribe = self.store.subscribe(StatusReporter(logger))

    def _banner(self):
        C, D, B, G, R, X = '\033[36m', '\033[90m', '\033[1m', '\033[32m', '\033[31m', '\033[0m'
        self.log.info("")
        self.log.info(f"{C}╔{'═'*60}╗{X}")
        self.log.info(f"{C}║{B}{'  BOOK ORGANIZER'.center(60)}{X}{C}║{X}")
        self.log.info(f"{C}╚{'═'*60}╝{X}")
        self.log.info(f"  {D}Watching:{X}     {B}{self.watch_dir}{X}")
        self.log.info(f"  {D}Books dir:{X}    {self.books_dir}")
        self.log.info(f"  {D}Google API:{X}   {G + '✓ key set' if self.catalog.api_key else R + '✗ None (anonymous quota)'}{X}")
        self.log.info(f"  {D}Workers:{X}      {self.config.workers}")
        self.log.info(f"  {D}Debounce:{X}     {self.config.debounce_seconds}s")
        self.log.info("")

    def start(self):
        self._banner()
        self.watcher.start()

    def stop(self, wait: bool = True):
        """Stop watching. In-flight files are allowed to finish when `wait` is set."""
        self.watcher.stop()
        if wait:
            self.coordinator.wait()
        self.coordinator.shutdown(wait=wait)
        self._unsubscribe()

    def run_once(self) -> Dict[str, int]:
        os.makedirs(self.books_dir, exist_ok=True)
        self.watcher.rescan()
        self.coordinator.wait()
        self.coordinator.shutdown()
        return self.summary()

    def resolve(self, path: str, isbn: str) -> bool:
        cleaned = normalize_isbn(clean_candidate(isbn))
        if not is_valid_isbn(cleaned):
            self.log.error(f"Invalid ISBN: {isbn!r}")
            return False
        path = os.path.abspath(os.path.expanduser(path))
        if not os.path.isfile(path):
            self.log.error(f"No such file: {path}")
            return False
        os.makedirs(self.books_dir, exist_ok=True)
        if not self.coordinator.admit(path, Identifier.isbn(cleaned)):
            return False
        self.coordinator.wait()
        entry = self.store.get(path)
        return entry is not None and entry.status is FileStatus.PROCESSED

    def summary(self) -> Dict[str, int]:
        counts = self.store.counts()
        self.log.info(f"Processed: {counts['processed']}  Failed: {counts['failed']}  "
                      f"Pending: {counts['pending'] + counts['processing']}")
        for entry in self.store.snapshot():
            if entry.status is FileStatus.FAILED:
                self.log.info(f"  \033[31m✗\033[0m {entry.original_name}  "
                              f"\033[90m(retry with --resolve {entry.source_path} <ISBN>)\033[0m")
        return counts


# =============================================================================
# CLI
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    from book_organizer_config import generate_default_config, parse_args_and_config

    config = parse_args_and_config(argv)
    if config.generate_config:
        print(generate_default_config())
        return 0

    watch_dir = os.path.abspath(os.path.expanduser(config.watch_dir))
    if not os.path.isdir(watch_dir):
        print(f"Error: {watch_dir} is not a directory", file=sys.stderr)
        return 1

    log_dir = config.log_dir or os.path.join(watch_dir, '.book_organizer_logs')
    logger = setup_logging(log_dir, config.verbose)
    try:
        organizer = BookOrganizer(config, logger)
        if config.resolve:
            filepath, isbn = config.resolve
            ok = organizer.resolve(filepath, isbn)
            organizer.coordinator.shutdown()
            organizer.summary()
            return 0 if ok else 1
        if config.once:
            counts = organizer.run_once()
            return 1 if counts['failed'] else 0

        organizer.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.warning("Interrupted, shutting down...")
        organizer.stop()
        organizer.summary()
        return 0
    finally:
        shutdown_logging(logger)


if __name__ == '__main__':
    sys.exit(main())
