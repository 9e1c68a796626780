from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from circdesk.errors import AssetUnavailableError, ExternalServiceError, NotFoundError, ValidationError
from circdesk.models import AssetStatus, PatronClass, PatronStatus
from circdesk.catalog import CatalogStore
from circdesk.services.google_books import GoogleBooksService, normalize_isbn


def _volume_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {"totalItems": 0}
    return response


GOOGLE_PAYLOAD = {
    "totalItems": 1,
    "items": [
        {
            "volumeInfo": {
                "title": "Clean Code",
                "authors": ["Robert C. Martin", "Dean Wampler"],
                "categories": ["Computers"],
                "industryIdentifiers": [
                    {"type": "ISBN_10", "identifier": "0132350882"},
                    {"type": "ISBN_13", "identifier": "9780132350884"},
                ],
                "imageLinks": {"thumbnail": "http://books.google.com/thumb.jpg"},
            }
        }
    ],
}


def test_asset_codes_are_sequential_per_year(catalog, clock):
    title = catalog.add_title("Dune", "Frank Herbert", call_number="813.54")
    first = catalog.add_asset(title.id)
    second = catalog.add_asset(title.id)
    clock.now = clock.now.replace(year=2027)
    third = catalog.add_asset(title.id)

    assert first.asset_code == "BOOK-2026-0001"
    assert second.asset_code == "BOOK-2026-0002"
    assert third.asset_code == "BOOK-2027-0001"
    assert first.status is AssetStatus.AVAILABLE


def test_explicit_asset_code_must_be_unique(catalog):
    title = catalog.add_title("Dune", "Frank Herbert")
    catalog.add_asset(title.id, asset_code="A001")
    with pytest.raises(ValidationError):
        catalog.add_asset(title.id, asset_code="A001")


def test_title_validation(catalog):
    with pytest.raises(ValidationError):
        catalog.add_title("", "Someone")
    with pytest.raises(ValidationError):
        catalog.add_title("Something", "Someone", price=Decimal("-1"))
    with pytest.raises(NotFoundError):
        catalog.add_asset(777)


def test_availability_counts(engine, catalog, library):
    engine.borrow(library.student.id, library.codes[0])
    engine.mark_damaged(library.assets[1].id)

    counts = catalog.availability(library.priced.id)
    assert counts == {"available": 2, "borrowed": 1, "damaged": 1, "lost": 0}
    assert len(catalog.list_assets(library.priced.id)) == 4


def test_retire_asset(engine, catalog, library):
    engine.borrow(library.student.id, library.codes[0])
    with pytest.raises(AssetUnavailableError):
        catalog.retire_asset(library.assets[0].id)

    retired = catalog.retire_asset(library.assets[1].id)
    assert retired.is_deleted
    with pytest.raises(NotFoundError):
        catalog.get_asset_by_code(library.codes[1])
    assert catalog.get_asset_by_code(library.codes[1], include_deleted=True).id == retired.id


def test_add_title_by_isbn(db_file, clock, monkeypatch):
    catalog = CatalogStore(db_file=db_file, google_books=GoogleBooksService(enabled=True), clock=clock)
    get_mock = MagicMock(return_value=_volume_response(payload=GOOGLE_PAYLOAD))
    monkeypatch.setattr("circdesk.services.google_books.httpx.get", get_mock)

    title = catalog.add_title_by_isbn("978-0-13-235088-4", call_number="005.1", price=Decimal("45"))

    assert title.title == "Clean Code"
    assert title.author == "Robert C. Martin, Dean Wampler"
    assert title.isbn == "9780132350884"
    assert title.category == "Computers"
    assert title.price == Decimal("45.00")
    assert get_mock.call_args.kwargs["params"]["q"] == "isbn:9780132350884"


def test_add_title_by_isbn_not_found(db_file, monkeypatch):
    catalog = CatalogStore(db_file=db_file, google_books=GoogleBooksService(enabled=True))
    monkeypatch.setattr(
        "circdesk.services.google_books.httpx.get", MagicMock(return_value=_volume_response())
    )
    with pytest.raises(LookupError, match="Book not found."):
        catalog.add_title_by_isbn("0000000000")


def test_google_books_network_failure(monkeypatch):
    request = httpx.Request("GET", "https://www.googleapis.com/books/v1/volumes")
    monkeypatch.setattr(
        "circdesk.services.google_books.httpx.get",
        MagicMock(side_effect=httpx.ConnectError("boom", request=request)),
    )
    with pytest.raises(ExternalServiceError):
        GoogleBooksService(api_key="k", enabled=True).lookup_isbn("9780132350884")


def test_google_books_error_status_returns_none(monkeypatch):
    monkeypatch.setattr(
        "circdesk.services.google_books.httpx.get", MagicMock(return_value=_volume_response(status_code=503))
    )
    assert GoogleBooksService(enabled=True).lookup_isbn("9780132350884") is None


def test_google_books_thumbnail_is_https(monkeypatch):
    monkeypatch.setattr(
        "circdesk.services.google_books.httpx.get",
        MagicMock(return_value=_volume_response(payload=GOOGLE_PAYLOAD)),
    )
    data = GoogleBooksService(enabled=True).lookup_isbn("9780132350884")
    assert data.thumbnail_url == "https://books.google.com/thumb.jpg"


def test_normalize_isbn():
    assert normalize_isbn(" 0-13-235088-x ") == "013235088X"
    assert normalize_isbn("") == ""


def test_patron_directory(patrons):
    student = patrons.register("2025-0042", "Carla Diaz", PatronClass.STUDENT, email="carla@example.edu")
    faculty = patrons.register("F-300", "Dr. Ong", PatronClass.FACULTY)

    assert patrons.get_by_code("2025-0042").id == student.id
    assert [p.patron_code for p in patrons.list(PatronClass.FACULTY)] == ["F-300"]
    assert patrons.set_status(faculty.id, PatronStatus.INACTIVE).status is PatronStatus.INACTIVE
    with pytest.raises(ValidationError):
        patrons.register("2025-0042", "Duplicate", PatronClass.STUDENT)
    with pytest.raises(NotFoundError):
        patrons.get(999)


def test_disabled_lookup_makes_no_request(monkeypatch):
    get_mock = MagicMock()
    monkeypatch.setattr("circdesk.services.google_books.httpx.get", get_mock)

    assert GoogleBooksService(enabled=False).lookup_isbn("9780132350884") is None
    get_mock.assert_not_called()
