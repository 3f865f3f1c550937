"""Shared fixtures: a quiet logger and factories for real PDF/EPUB files."""

import logging

import pytest


@pytest.fixture
def logger():
    """Logger used by components under test."""
    log = logging.getLogger("organizer_tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def make_pdf(tmp_path):
    """Build a PDF on disk with one page per text entry."""
    import fitz

    def _make(name, pages=("",), metadata=None, directory=None):
        path = (directory or tmp_path) / name
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text)
        if metadata:
            doc.set_metadata(metadata)
        doc.save(str(path))
        doc.close()
        return path

    return _make


@pytest.fixture
def make_epub(tmp_path):
    """Build an EPUB on disk with one XHTML chapter per body fragment."""
    from ebooklib import epub

    def _make(name, title="Sample Book", chapters=("<p>Hello</p>",), identifier="sample-book",
              authors=(), directory=None):
        path = (directory or tmp_path) / name
        book = epub.EpubBook()
        book.set_identifier(identifier)
        book.set_title(title)
        book.set_language("en")
        for author in authors:
            book.add_author(author)
        items = []
        for index, body in enumerate(chapters, 1):
            chapter = epub.EpubHtml(title=f"Chapter {index}", file_name=f"chap_{index}.xhtml", lang="en")
            chapter.content = f"<html><head><title>Chapter {index}</title></head><body>{body}</body></html>"
            book.add_item(chapter)
            items.append(chapter)
        book.toc = items
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = ["nav"] + items
        epub.write_epub(str(path), book)
        return path

    return _make
