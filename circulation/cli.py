"""Bakım komut satırı: veritabanı kurulumu, katalog, pano ve uzlaştırma."""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from circulation.catalog import CatalogService
from circulation.config import settings
from circulation.database import LocalStore
from circulation.errors import CirculationError
from circulation.models import Book, Role
from circulation.query_cache import QueryCache
from circulation.reservations import ReservationService
from circulation.views import CirculationViews

logger = logging.getLogger(__name__)

# İzin verilen değerler: 'plain' (varsayılan), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

console = Console()
app = typer.Typer(help=settings.app_name)


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _open_store(db_file: Optional[str]) -> LocalStore:
    return LocalStore(db_file=db_file or settings.db_file)


def _fail(message: str) -> None:
    console.print(f"[bold red]Hata: {message}[/]")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Çıktı formatı: plain | json | rich (varsayılan: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Ayrıntılı günlük"),
):
    """CLI için genel seçenekler."""
    if output and output.lower() in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = output.lower()
    logging.basicConfig(
        level=logging.DEBUG if verbose or settings.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def print_books(books: List[Book]) -> None:
    mode = get_output_mode()
    if not books:
        print("Katalogda kitap yok.")
        return
    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Katalog", show_lines=True, header_style="bold cyan")
        table.add_column("#", style="magenta", no_wrap=True)
        table.add_column("Başlık")
        table.add_column("Yazar")
        table.add_column("Kategori")
        table.add_column("Durum")
        for b in books:
            status = "[green]AVAILABLE[/]" if b.status == "AVAILABLE" else "[yellow]LOANED[/]"
            table.add_row(str(b.id), b.title, b.author, b.category or "-", status)
        console.print(table)
    else:
        for b in books:
            suffix = "" if b.is_active else " (inactive)"
            print(f"{b.id} - {b.title} by {b.author} [{b.status}]{suffix}")


def print_dashboard(data: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
        return
    if mode == "rich":
        stats = Table(title="📊 Pano", header_style="bold cyan")
        for column in ("Toplam Kitap", "Aktif Ödünç", "Rafta", "Kullanıcı"):
            stats.add_column(column, justify="right")
        stats.add_row(str(data["total_books"]), str(data["active_loans"]),
                      str(data["available_books"]), str(data["total_users"]))
        console.print(stats)
        top = Table(title="🏆 En Çok Ödünç Alınanlar", header_style="bold cyan")
        top.add_column("Sıra", justify="right")
        top.add_column("Başlık")
        top.add_column("Ödünç", justify="right")
        for row in data["top_books"]:
            top.add_row(str(row["ranking"]), row["title"], str(row["loan_count"]))
        console.print(top)
        return
    print(f"Total books: {data['total_books']}")
    print(f"Active loans: {data['active_loans']}")
    print(f"Available: {data['available_books']}")
    print(f"Users: {data['total_users']}")
    print("Loans by weekday: " + ", ".join(f"{d['name']}={d['loans']}" for d in data["chart"]))
    for row in data["top_books"]:
        print(f"#{row['ranking']} {row['title']} ({row['loan_count']})")


@app.command("init-db")
def cli_init_db(db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası")):
    """Veritabanı şemasını oluştur."""
    store = _open_store(db)
    print(f"Database ready: {store.db_file}")


@app.command("seed")
def cli_seed(db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası")):
    """Örnek kataloğu ekle (var olan kitaplar atlanır)."""
    store = _open_store(db)
    added = asyncio.run(CatalogService(store).seed())
    print(f"Seeded {len(added)} books.")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası"),
):
    """Kataloğa bir kitap ekle."""
    store = _open_store(db)
    try:
        book = asyncio.run(CatalogService(store).add_book({"title": title, "author": author, "category": category}))
    except ValueError as e:
        _fail(str(e))
    print(f"Successfully added: {book.title} by {book.author} (#{book.id})")


@app.command("deactivate-book")
def cli_deactivate_book(book_id: int, db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası")):
    """Kitabı katalogdan kaldır (ödünçteyse reddedilir)."""
    store = _open_store(db)
    try:
        book = asyncio.run(CatalogService(store).deactivate_book(book_id))
    except CirculationError as e:
        _fail(str(e))
    print(f"Deactivated: {book.title} (#{book.id})")


@app.command("books")
def cli_books(
    search: str = typer.Option("", "--search", "-s", help="Başlık, yazar veya kategori"),
    status: Optional[str] = typer.Option(None, "--status", help="AVAILABLE | LOANED"),
    page: int = typer.Option(1, "--page", "-p"),
    all_books: bool = typer.Option(False, "--all", help="Pasif kitaplar dahil tüm envanter"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası"),
):
    """Kataloğu listele."""
    store = _open_store(db)
    views = CirculationViews(store, QueryCache(retry=0))
    read = views.inventory_page if all_books else views.catalog_page
    try:
        result = asyncio.run(read(page=page, search=search, status=status))
    except ValueError as e:
        _fail(str(e))
    if result.is_error:
        _fail(str(result.error))
    print_books(result.data.books)
    if get_output_mode() != "json" and result.data.total_pages > 1:
        print(f"Page {result.data.page}/{result.data.total_pages} ({result.data.total} books)")


@app.command("dashboard")
def cli_dashboard(db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası")):
    """Yönetici panosu istatistiklerini göster."""
    store = _open_store(db)
    views = CirculationViews(store, QueryCache(retry=0))
    result = asyncio.run(views.dashboard())
    if result.is_error:
        _fail(str(result.error))
    board = result.data
    print_dashboard({
        "total_books": board.total_books,
        "active_loans": board.active_loans,
        "available_books": board.available_books,
        "total_users": board.total_users,
        "chart": board.chart,
        "top_books": board.top_books,
    })


@app.command("reconcile")
def cli_reconcile(db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası")):
    """Kitap durumlarını aktif ödünç kayıtlarıyla eşitle."""
    store = _open_store(db)
    report = asyncio.run(ReservationService(store, QueryCache()).reconcile())
    if not report.repaired:
        print("No inconsistencies found.")
        return
    print(f"Released: {report.released}")
    print(f"Marked loaned: {report.marked_loaned}")


@app.command("promote")
def cli_promote(
    email: str,
    role: str = typer.Option(Role.ADMIN.value, "--role", help="admin | user"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite dosyası"),
):
    """Bir kullanıcının rolünü değiştir."""
    try:
        role = Role(role).value
    except ValueError:
        _fail(f"Bilinmeyen rol: {role}")
    store = _open_store(db)
    rows = asyncio.run(store.update("profiles", {"role": role}, {"email": email.strip().lower()}))
    if not rows:
        _fail(f"Kullanıcı bulunamadı: {email}")
    print(f"{email} is now {role}")


def main():
    app()


if __name__ == "__main__":
    main()
