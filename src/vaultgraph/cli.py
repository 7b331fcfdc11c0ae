"""Command line interface for VaultGraph."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from vaultgraph.config import AppConfig
from vaultgraph.embedding.encoder import create_embedder
from vaultgraph.errors import EmbeddingError
from vaultgraph.index.indexer import IndexSession, index_vault, vault_loader
from vaultgraph.index.persistence import PersistenceManager
from vaultgraph.models import ScoredResult

console = Console()
app = typer.Typer(help="VaultGraph - hybrid vector, keyword and graph search for markdown vaults")

PROVIDERS = ("local", "worker", "remote")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _config(state_dir: Path | None, vault: Path | None, model: str | None) -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        state_dir=state_dir if state_dir is not None else defaults.state_dir,
        vault_path=vault,
        model_name=model or defaults.model_name,
    )


def _open_session(config: AppConfig, provider: str) -> tuple[IndexSession, PersistenceManager]:
    if provider not in PROVIDERS:
        raise typer.BadParameter(f"Unknown provider {provider!r}; choose one of {', '.join(PROVIDERS)}")
    options = {"state_path": config.ladder_state_path(Path.cwd())} if provider == "worker" else {}
    embedder = create_embedder(provider, model_name=config.model_name, **options)
    loader = vault_loader(config.vault_path) if config.vault_path is not None else None
    session = IndexSession(config.index_config(), embedder, content_loader=loader)
    persistence = PersistenceManager(
        config.hot_snapshot_path(Path.cwd()), config.cold_snapshot_path(Path.cwd())
    )
    persistence.load(session)
    return session, persistence


def _print_results(results: List[ScoredResult]) -> None:
    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Span")
    table.add_column("Snippet")
    for result in results:
        span = f"{result.start}-{result.end}" if result.start is not None else ""
        snippet = result.excerpt.replace("\n", " ")
        table.add_row(f"{result.score:.4f}", result.path, span, snippet[:180])
    console.print(table)


StateOption = typer.Option(None, "--state-dir", help="Directory holding index snapshots")
VaultOption = typer.Option(None, "--vault", help="Vault root used to re-read document text")
ModelOption = typer.Option(None, help="Embedding model name")
ProviderOption = typer.Option("local", help="Embedding provider: local, worker or remote")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


@app.command()
def index(
    vault: Path = typer.Argument(..., help="Vault directory to index.", resolve_path=True),
    state_dir: Path = StateOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index every markdown file in a vault and save snapshots."""
    _setup_logging(verbose)
    if not vault.is_dir():
        raise typer.BadParameter(f"Vault not found: {vault}")

    config = _config(state_dir, vault, model)
    session, persistence = _open_session(config, provider)
    console.print(f"Indexing [bold]{vault}[/bold]...")
    try:
        stats = index_vault(session, vault)
    except EmbeddingError as exc:
        console.print(f"[red]Embedding failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    persistence.save(session)
    console.print(
        f"Inserted: {stats.inserted}, updated: {stats.updated}, "
        f"skipped: {stats.skipped}, failed: {stats.failed}, removed: {stats.removed}"
    )
    session.close()


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    state_dir: Path = StateOption,
    vault: Optional[Path] = VaultOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
    limit: int = typer.Option(10, help="Number of results to display"),
    keyword: bool = typer.Option(False, "--keyword", help="Keyword matching only"),
    verbose: bool = VerboseOption,
) -> None:
    """Run a hybrid search."""
    _setup_logging(verbose)
    session, _ = _open_session(_config(state_dir, vault, model), provider)
    results = session.keyword_search(query, limit) if keyword else session.search(query, limit)
    _print_results(results)
    session.close()


@app.command()
def context(
    query: str = typer.Argument(..., help="Query text"),
    state_dir: Path = StateOption,
    vault: Optional[Path] = VaultOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
    budget: Optional[int] = typer.Option(None, help="Token budget"),
    verbose: bool = VerboseOption,
) -> None:
    """Print the tiered context assembled for a query."""
    _setup_logging(verbose)
    session, _ = _open_session(_config(state_dir, vault, model), provider)
    assembled = session.assemble_context(query, budget=budget)
    if not assembled.items:
        console.print("[yellow]No context assembled.[/yellow]")
    else:
        console.print(assembled.render(), markup=False, highlight=False)
        console.print(f"[dim]{assembled.used_tokens}/{assembled.budget} tokens[/dim]")
    session.close()


@app.command()
def neighbors(
    path: str = typer.Argument(..., help="Vault-relative document path"),
    state_dir: Path = StateOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
    direction: str = typer.Option("both", help="both, inbound or outbound"),
    ontology: bool = typer.Option(False, "--ontology", help="Include siblings reached through hubs"),
) -> None:
    """List graph neighbours of a document."""
    session, _ = _open_session(_config(state_dir, None, model), provider)
    results = session.get_neighbors(path, direction=direction, mode="ontology" if ontology else "simple")
    _print_results(results)
    session.close()


@app.command()
def similar(
    path: str = typer.Argument(..., help="Vault-relative document path"),
    state_dir: Path = StateOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
    limit: int = typer.Option(10, help="Number of results to display"),
) -> None:
    """List documents similar to a given one."""
    session, _ = _open_session(_config(state_dir, None, model), provider)
    _print_results(session.get_similar(path, limit))
    session.close()


@app.command()
def reset(
    state_dir: Path = StateOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete saved index snapshots."""
    config = _config(state_dir, None, None)
    if not yes and not typer.confirm("Delete all saved index snapshots?"):
        raise typer.Abort()
    PersistenceManager(
        config.hot_snapshot_path(Path.cwd()), config.cold_snapshot_path(Path.cwd())
    ).delete()
    console.print("Index snapshots removed.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    state_dir: Path = StateOption,
    vault: Optional[Path] = VaultOption,
    model: Optional[str] = ModelOption,
    provider: str = ProviderOption,
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from vaultgraph.web.app import create_app

    session, persistence = _open_session(_config(state_dir, vault, model), provider)
    console.print(f"Starting API on http://{host}:{port}")
    uvicorn.run(
        create_app(session, persistence=persistence),
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
