import os
from typing import Optional

import typer
import uvicorn
from rich import box
from rich.console import Console
from rich.table import Table

from library_app import database
from library_app.auth import AuthService
from library_app.config import settings
from library_app.database import RlsContext
from library_app.errors import LibraryError
from library_app.loans import LoanService
from library_app.membership_cards import MembershipCardService

console = Console()

app = typer.Typer(help="Library loans administration CLI")


@app.callback()
def _global_options(
    db_file: Optional[str] = typer.Option(
        None,
        "--db-file",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file (default: LIBRARY_DB_FILE or a per-process temp file)",
    )
):
    """Options shared by every command."""
    if db_file:
        database.DATABASE_FILE = db_file
        # uvicorn reload workers re-import the app and only see the environment
        os.environ["LIBRARY_DB_FILE"] = db_file
    database.initialize_database()


def _fail(error: LibraryError) -> None:
    console.print(f"[bold red]Error:[/] {error.message}")
    raise typer.Exit(code=1)


@app.command("init-db")
def cli_init_db():
    """Create the schema if it does not exist."""
    console.print(f"Database ready at [bold]{database.DATABASE_FILE}[/]")


@app.command("seed-cards")
def cli_seed_cards(
    count: int = typer.Argument(..., min=1, help="Number of FREE cards to create"),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="Serial prefix (default: MEMBERSHIP_CARD_PREFIX)"),
):
    """Add FREE membership cards numbered after the highest existing serial."""
    try:
        cards = MembershipCardService().seed(count, prefix)
    except LibraryError as e:
        _fail(e)
    console.print(f"[green]Seeded {len(cards)} cards:[/] {cards[0].serial_number} .. {cards[-1].serial_number}")


@app.command("create-admin")
def cli_create_admin(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, confirmation_prompt=True),
    first_name: str = typer.Option(settings.admin_first_name, "--first-name"),
    last_name: str = typer.Option(settings.admin_last_name, "--last-name"),
):
    """Create an administrator account."""
    try:
        user = AuthService().create_admin(email, password, first_name, last_name)
    except LibraryError as e:
        _fail(e)
    console.print(f"[green]Administrator created:[/] {user.email} (id {user.id})")


@app.command("list-cards")
def cli_list_cards(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="FREE or IN_USE"),
):
    """Show membership cards."""
    if status and status.upper() not in ("FREE", "IN_USE"):
        console.print("[bold red]Error:[/] status must be FREE or IN_USE")
        raise typer.Exit(code=2)
    cards = MembershipCardService().list_cards(status.upper() if status else None, RlsContext.system())
    if not cards:
        console.print("No membership cards.")
        return

    table = Table(title="Membership cards", box=box.SIMPLE)
    table.add_column("ID", justify="right")
    table.add_column("Serial")
    table.add_column("Status")
    table.add_column("User", justify="right")
    table.add_column("Assigned at")
    for card in cards:
        style = "green" if card.is_free else "yellow"
        table.add_row(str(card.id), card.serial_number, f"[{style}]{card.status}[/]",
                      str(card.user_id or "-"), card.assigned_at or "-")
    console.print(table)


@app.command("list-loans")
def cli_list_loans(
    ongoing: bool = typer.Option(False, "--ongoing", help="Only loans not yet returned"),
):
    """Show loans."""
    service = LoanService()
    loans = service.find_ongoing(ctx=RlsContext.system()) if ongoing else service.find_all(RlsContext.system())
    if not loans:
        console.print("No loans.")
        return

    table = Table(title="Loans", box=box.SIMPLE)
    table.add_column("ID", justify="right")
    table.add_column("Book")
    table.add_column("User", justify="right")
    table.add_column("Status")
    table.add_column("Borrowed")
    table.add_column("Due")
    table.add_column("Returned")
    for loan in loans:
        table.add_row(str(loan.id), loan.book_title or str(loan.book_id), str(loan.user_id), loan.status,
                      loan.borrowed_at, loan.due_at or "-", loan.returned_at or "-")
    console.print(table)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
):
    """Run the REST API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"Starting API on http://{host}:{port}/")
    uvicorn.run("library_app.api:app", host=host, port=port, reload=reload,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
