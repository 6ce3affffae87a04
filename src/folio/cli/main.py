import os
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from folio.core.answer import AnswerComposer
from folio.core.config import Settings, get_settings
from folio.core.errors import FolioError
from folio.core.ingest import IngestionOrchestrator
from folio.core.logging_config import configure_logging, get_audit_logger
from folio.core.models import DocumentStatus, JobStatus
from folio.core.pg_store import PostgresStore
from folio.core.store import CorpusStore

app = typer.Typer(help="Folio CLI: ingest PDFs and ask questions answered only from them")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)

STATUS_STYLES = {
    DocumentStatus.PENDING: "dim",
    DocumentStatus.PROCESSING: "yellow",
    DocumentStatus.COMPLETE: "green",
    DocumentStatus.FAILED: "red",
}


def load_settings() -> Settings:
    try:
        return get_settings()
    except FolioError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def get_store(settings: Settings) -> PostgresStore:
    return PostgresStore(settings.database_url, dimensions=settings.embed_dimensions)


def get_orchestrator(settings: Settings, store: CorpusStore, for_ingestion: bool = True) -> IngestionOrchestrator:
    if not for_ingestion:
        # Listing and deleting never call the embedding service
        return IngestionOrchestrator(store, embedder=None, text_source=None, settings=settings)
    return IngestionOrchestrator.from_settings(settings, store)


def get_composer(settings: Settings, store: CorpusStore) -> AnswerComposer:
    return AnswerComposer.from_settings(settings, store)


@app.command("init-db")
def init_db():
    """Create the pgvector extension, tables and indexes."""
    settings = load_settings()
    store = get_store(settings)
    try:
        with console.status("[bold green]Creating schema..."):
            store.create_schema()
    except FolioError as e:
        console.print(f"[red]Error creating schema:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Schema ready[/] (vector dimensions: {settings.embed_dimensions})")


@app.command()
def ingest(
    path: str,
    title: str = typer.Option(..., help="Display title used in citations"),
    topic: str = typer.Option(..., help="Topic the document belongs to"),
    initiator: Optional[str] = typer.Option(None, help="Who started this ingestion"),
    wait_for_completion: bool = typer.Option(True, "--wait/--no-wait", help="Wait for processing to finish"),
):
    """Ingest one PDF file into the corpus."""
    pdf_path = Path(path)
    if not pdf_path.exists():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)
    if not pdf_path.is_file():
        console.print(f"[red]Error:[/] Path {path} is not a file")
        raise typer.Exit(1)

    settings = load_settings()
    store = get_store(settings)
    try:
        orchestrator = get_orchestrator(settings, store)
        document_id, job_id = orchestrator.start_ingestion(
            pdf_path.read_bytes(), title, topic, initiator=initiator
        )
    except FolioError as e:
        console.print(f"[red]Error starting ingestion:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[bold]Document:[/] {document_id}")
    console.print(f"[bold]Job:[/] {job_id}")

    if not wait_for_completion:
        console.print("[dim]Processing in the background; check progress with 'folio status'.[/]")
        return

    start_time = time.time()
    final_status = None
    with console.status("[bold green]Processing...") as spinner:
        while final_status is None:
            try:
                final_status = orchestrator.wait(job_id, timeout=1.0)
            except FutureTimeoutError:
                try:
                    job = store.get_job(job_id)
                except FolioError as e:
                    spinner.update(f"[bold green]Processing...[/] (progress unavailable: {e})")
                    continue
                if job is not None:
                    spinner.update(
                        f"[bold green]Processing...[/] {job.completed_workers}/{job.total_workers} workers done"
                    )

    elapsed = time.time() - start_time
    try:
        if final_status == JobStatus.COMPLETE:
            console.print(f"[green]✅ Ingestion complete![/] ({elapsed:.1f}s)")
            console.print(f"[bold]Chunks committed:[/] {store.count_chunks(document_id)}")
            return
        document = store.get_document(document_id)
    except FolioError as e:
        console.print(f"[red]Error reading ingestion result:[/] {e}")
        raise typer.Exit(1)

    detail = document.error_detail if document else "document no longer exists"
    console.print(f"[red]❌ Ingestion failed:[/] {detail}")
    raise typer.Exit(1)


@app.command()
def status(document_id: Optional[str] = typer.Argument(None, help="Show details for one document")):
    """List documents (newest first) or show one document's job progress."""
    settings = load_settings()
    store = get_store(settings)
    orchestrator = get_orchestrator(settings, store, for_ingestion=False)

    try:
        if document_id:
            document = orchestrator.get_document(document_id)
            if document is None:
                console.print(f"[yellow]Document {document_id} not found.[/]")
                raise typer.Exit(1)
            job = orchestrator.get_job(document_id)
            style = STATUS_STYLES[document.status]
            console.print(f"[bold]{document.title}[/] ({document.topic})")
            console.print(f"   [blue]Status:[/] [{style}]{document.status.value}[/]")
            console.print(f"   [blue]Created:[/] {document.created_at:%Y-%m-%d %H:%M:%S}")
            if document.error_detail:
                console.print(f"   [blue]Error:[/] {document.error_detail}")
            if job is not None:
                console.print(
                    f"   [blue]Job:[/] {job.status.value}, "
                    f"{job.completed_workers}/{job.total_workers} workers ({job.progress:.0%})"
                )
            console.print(f"   [blue]Chunks:[/] {store.count_chunks(document_id)}")
            return

        documents = orchestrator.list_documents()
    except FolioError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not documents:
        console.print("[yellow]No documents ingested yet.[/]")
        return

    table = Table(title="Documents")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Topic")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Error")
    for document in documents:
        style = STATUS_STYLES[document.status]
        table.add_row(
            document.id,
            document.title,
            document.topic,
            f"[{style}]{document.status.value}[/]",
            f"{document.created_at:%Y-%m-%d %H:%M}",
            document.error_detail or "",
        )
    console.print(table)


@app.command()
def delete(
    document_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a document with all of its chunks."""
    settings = load_settings()
    store = get_store(settings)
    orchestrator = get_orchestrator(settings, store, for_ingestion=False)

    if not yes and not Confirm.ask(f"Delete document {document_id} and all of its chunks?"):
        console.print("[dim]Cancelled.[/]")
        return

    try:
        deleted = orchestrator.delete_document(document_id)
    except FolioError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not deleted:
        console.print(f"[yellow]Document {document_id} not found.[/]")
        raise typer.Exit(1)
    console.print(f"[green]Deleted document {document_id}[/]")


@app.command()
def ask(
    question: str,
    topic: Optional[str] = typer.Option(None, help="Only search passages of this topic"),
):
    """Answer a question using only the ingested documents."""
    audit_logger = get_audit_logger("cli")
    settings = load_settings()
    store = get_store(settings)

    try:
        composer = get_composer(settings, store)
        with console.status("[bold green]Searching..."):
            answer = composer.ask(question, topic=topic)
    except FolioError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    audit_logger.info(
        "cli_question",
        topic=topic,
        has_relevant_docs=answer.has_relevant_docs,
        citations_count=len(answer.citations),
        event_type="cli"
    )

    console.print(answer.answer)
    if answer.citations:
        console.print()
        console.print("[bold cyan]Sources:[/]")
        for citation in answer.citations:
            console.print(f"   {citation.title}, page {citation.page_number}")


if __name__ == "__main__":
    app()
