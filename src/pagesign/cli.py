"""PageSign CLI: templates, fields and signing requests from the command line.

Usage:
    pagesign add-template <pdf> --name "NDA"
    pagesign add-field <template-id> --type signature --page 1 --x 72 --y 650
    pagesign render <template-id> --page 1 --scale 1.5 --out page1.png
    pagesign create-request <template-id> --title "NDA" --recipient "Jane Doe" jane@example.com
    pagesign send <request-id>
    pagesign sign <token> --value "Full name=Jane Doe" --signature Signature=sig.png
    pagesign serve [--port 8400]
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .background import drain
from .config import PageSignConfig
from .errors import FieldValidationError, PageSignError, RegistrySaveError
from .models import (
    FieldType,
    Recipient,
    RecipientStatus,
    RequestStatus,
    SigningStep,
    TemplateField,
)
from .registry import FieldRegistry
from .renderer import PageRenderer
from .service import SigningService
from .session import SigningSession
from .store import SigningStore

console = Console()

STATUS_COLORS = {
    RequestStatus.DRAFT: "dim",
    RequestStatus.SENT: "yellow",
    RequestStatus.COMPLETED: "green",
    RequestStatus.CANCELLED: "red",
}


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="PageSign data directory (default: ~/.pagesign)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(),
    default=None,
    help="JSON configuration file",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def main(
    ctx: click.Context,
    data_dir: Optional[str],
    config_path: Optional[str],
    verbose: bool,
) -> None:
    """PageSign: place fields on PDF templates and collect signatures."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    config = PageSignConfig.load(Path(config_path) if config_path else None)
    if data_dir:
        config.data_dir = Path(data_dir)
    store = SigningStore(config.data_dir)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["store"] = store
    ctx.obj["service"] = SigningService(store, config=config)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/]")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@main.command()
@click.pass_context
def templates(ctx: click.Context) -> None:
    """List all templates."""
    store: SigningStore = ctx.obj["store"]
    tpls = store.list_templates()

    if not tpls:
        console.print("[dim]No templates found.[/]")
        return

    table = Table(title="PageSign Templates")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Name", style="cyan")
    table.add_column("Pages", justify="right")
    table.add_column("Fields", justify="right")
    table.add_column("Created")

    for t in tpls:
        table.add_row(
            t.template_id[:12],
            t.name,
            str(t.page_count or "?"),
            str(len(store.list_template_fields(t.template_id))),
            t.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command("add-template")
@click.argument("pdf", type=click.Path(exists=True))
@click.option("--name", default=None, help="Template name (default: file name)")
@click.pass_context
def add_template(ctx: click.Context, pdf: str, name: Optional[str]) -> None:
    """Upload a PDF as a new template."""
    service: SigningService = ctx.obj["service"]
    pdf_path = Path(pdf)
    try:
        template = service.create_template(name or pdf_path.stem, pdf_path.read_bytes())
    except ValueError as exc:
        _fail(str(exc))

    console.print(
        Panel(
            f"[bold green]Template created![/]\n\n"
            f"  Name:  {template.name}\n"
            f"  ID:    {template.template_id}\n"
            f"  Pages: {template.page_count}",
            title="PageSign",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------

@main.command()
@click.argument("template_id")
@click.pass_context
def fields(ctx: click.Context, template_id: str) -> None:
    """List the fields placed on a template."""
    store: SigningStore = ctx.obj["store"]
    try:
        template = store.load_template(template_id)
    except FileNotFoundError:
        _fail(f"Template not found: {template_id}")

    items = store.list_template_fields(template_id)
    if not items:
        console.print("[dim]No fields placed yet.[/]")
        return

    table = Table(title=f"Fields: {template.name}")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Page", justify="right")
    table.add_column("Box (x, y, w, h)")
    table.add_column("Required", justify="center")

    for f in items:
        table.add_row(
            (f.id or "")[:12],
            f.name,
            f.field_type.value,
            str(f.page),
            f"{f.x:.0f}, {f.y:.0f}, {f.width:.0f}, {f.height:.0f}",
            "[green]yes[/]" if f.required else "[dim]no[/]",
        )

    console.print(table)


@main.command("add-field")
@click.argument("template_id")
@click.option(
    "--type",
    "field_type",
    type=click.Choice([t.value for t in FieldType]),
    default=FieldType.TEXT.value,
    help="Field type",
)
@click.option("--name", default=None, help="Field label (default: <type>_field_<n>)")
@click.option("--page", default=1, type=int, help="1-indexed page")
@click.option("--x", "x", required=True, type=float, help="Left edge, points from the left")
@click.option("--y", "y", required=True, type=float, help="Top edge, points from the top")
@click.option("--width", default=None, type=float, help="Box width in points")
@click.option("--height", default=None, type=float, help="Box height in points")
@click.option("--placeholder", default=None, help="Hint shown in the empty field")
@click.option("--optional", "optional_", is_flag=True, help="Recipient may leave it empty")
@click.pass_context
def add_field(
    ctx: click.Context,
    template_id: str,
    field_type: str,
    name: Optional[str],
    page: int,
    x: float,
    y: float,
    width: Optional[float],
    height: Optional[float],
    placeholder: Optional[str],
    optional_: bool,
) -> None:
    """Place a field on a template."""
    store: SigningStore = ctx.obj["store"]
    config: PageSignConfig = ctx.obj["config"]
    try:
        template = store.load_template(template_id)
    except FileNotFoundError:
        _fail(f"Template not found: {template_id}")

    kind = FieldType(field_type)
    size = config.designer.size_for(kind)
    registry = FieldRegistry.load(store, template_id, page_count=template.page_count)
    try:
        registry.add(
            TemplateField(
                name=name or f"{kind.value}_field_{len(registry) + 1}",
                field_type=kind,
                page=page,
                x=x,
                y=y,
                width=width or size.width,
                height=height or size.height,
                required=not optional_,
                placeholder=placeholder,
            )
        )
        saved = registry.replace_all(store)
    except (ValueError, RegistrySaveError) as exc:
        _fail(str(exc))

    field = saved[-1]
    console.print(
        f"[green]Added[/] {field.field_type.value} field [cyan]{field.name}[/] "
        f"on page {field.page} ([dim]{field.id}[/])"
    )


@main.command("remove-field")
@click.argument("template_id")
@click.argument("field_id")
@click.pass_context
def remove_field(ctx: click.Context, template_id: str, field_id: str) -> None:
    """Remove a field from a template."""
    store: SigningStore = ctx.obj["store"]
    registry = FieldRegistry.load(store, template_id)
    try:
        removed = registry.remove(field_id)
        registry.replace_all(store)
    except KeyError:
        _fail(f"Field not found: {field_id}")
    except RegistrySaveError as exc:
        _fail(str(exc))
    console.print(f"[green]Removed[/] field [cyan]{removed.name}[/]")


# ---------------------------------------------------------------------------
# Render
# ---------------------------------------------------------------------------

@main.command()
@click.argument("template_id")
@click.option("--page", default=1, type=int, help="1-indexed page")
@click.option("--scale", default=None, type=float, help="Zoom factor (clamped)")
@click.option("--out", default=None, type=click.Path(), help="Output PNG path")
@click.pass_context
def render(
    ctx: click.Context,
    template_id: str,
    page: int,
    scale: Optional[float],
    out: Optional[str],
) -> None:
    """Rasterise one page of a template to PNG."""
    service: SigningService = ctx.obj["service"]
    config: PageSignConfig = ctx.obj["config"]
    try:
        template = service.store.load_template(template_id)
        pdf_data = service.template_pdf(template)
    except FileNotFoundError as exc:
        _fail(str(exc))

    async def _render() -> tuple[int, float, bytes]:
        renderer = PageRenderer(pdf_data, config.viewer)
        try:
            await renderer.load()
            shown = renderer.go_to(page)
            if scale is not None:
                renderer.set_scale(scale)
            return shown, renderer.scale, renderer.render_png()
        finally:
            renderer.close()

    shown, used_scale, png = asyncio.run(_render())
    target = Path(out or f"{template_id[:8]}-p{shown}.png")
    target.write_bytes(png)
    console.print(f"Rendered page {shown} at {used_scale:g}x to [cyan]{target}[/]")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@main.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in RequestStatus]),
    default=None,
    help="Filter by status",
)
@click.pass_context
def requests(ctx: click.Context, status: Optional[str]) -> None:
    """List signing requests."""
    store: SigningStore = ctx.obj["store"]
    status_filter = RequestStatus(status) if status else None
    reqs = store.list_requests(status=status_filter)

    if not reqs:
        console.print("[dim]No signing requests found.[/]")
        return

    table = Table(title="PageSign Requests")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Signed", justify="right")
    table.add_column("Created")

    for req in reqs:
        signed = sum(1 for r in req.recipients if r.status == RecipientStatus.SIGNED)
        color = STATUS_COLORS.get(req.status, "white")
        table.add_row(
            req.id[:12],
            req.title,
            f"[{color}]{req.status.value}[/]",
            f"{signed}/{len(req.recipients)}",
            req.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command("create-request")
@click.argument("template_id")
@click.option("--title", required=True, help="Title shown to recipients")
@click.option("--message", default="", help="Note to recipients")
@click.option(
    "--recipient",
    "recipients",
    type=(str, str),
    multiple=True,
    required=True,
    metavar="NAME EMAIL",
    help="Recipient name and email (repeatable)",
)
@click.pass_context
def create_request(
    ctx: click.Context,
    template_id: str,
    title: str,
    message: str,
    recipients: tuple[tuple[str, str], ...],
) -> None:
    """Create a draft signing request."""
    service: SigningService = ctx.obj["service"]
    config: PageSignConfig = ctx.obj["config"]
    try:
        request = service.create_request(
            template_id,
            title,
            [Recipient(name=name, email=email) for name, email in recipients],
            message,
        )
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))

    table = Table(title=f"Request {request.id}")
    table.add_column("Recipient", style="cyan")
    table.add_column("Email")
    table.add_column("Signing link", style="dim")
    for r in request.recipients:
        table.add_row(r.name, r.email, config.signing_url(r.access_token))
    console.print(table)


@main.command()
@click.argument("request_id")
@click.pass_context
def send(ctx: click.Context, request_id: str) -> None:
    """Send a request to its recipients."""
    service: SigningService = ctx.obj["service"]

    async def _send():
        try:
            return await service.send_request(request_id)
        finally:
            await drain()

    try:
        request = asyncio.run(_send())
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))
    console.print(
        f"[green]Sent[/] [cyan]{request.title}[/] to {len(request.recipients)} recipient(s)"
    )


@main.command()
@click.argument("request_id")
@click.pass_context
def cancel(ctx: click.Context, request_id: str) -> None:
    """Cancel a request; its signing links stop working."""
    service: SigningService = ctx.obj["service"]
    try:
        request = service.cancel_request(request_id)
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))
    console.print(f"[yellow]Cancelled[/] [cyan]{request.title}[/]")


@main.command()
@click.argument("request_id")
@click.pass_context
def audit(ctx: click.Context, request_id: str) -> None:
    """Show the audit trail for a signing request."""
    store: SigningStore = ctx.obj["store"]
    entries = store.get_audit_trail(request_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.actor or "-",
            e.details,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Sign
# ---------------------------------------------------------------------------

def _parse_pairs(pairs: tuple[str, ...], option: str) -> list[tuple[str, str]]:
    parsed = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected FIELD=VALUE, got {pair!r}", param_hint=option)
        parsed.append((key, value))
    return parsed


def _field_id(session: SigningSession, key: str) -> str:
    for f in session.fields:
        if key in (f.id, f.name):
            return f.id
    raise click.BadParameter(f"no field named {key!r}")


@main.command()
@click.argument("token")
@click.option("--value", "values", multiple=True, help="FIELD=VALUE, by field id or name")
@click.option(
    "--signature",
    "signatures",
    multiple=True,
    help="FIELD=PNG_PATH, by field id or name",
)
@click.pass_context
def sign(
    ctx: click.Context,
    token: str,
    values: tuple[str, ...],
    signatures: tuple[str, ...],
) -> None:
    """Complete a signing link without a browser."""
    service: SigningService = ctx.obj["service"]
    value_pairs = _parse_pairs(values, "--value")
    signature_pairs = _parse_pairs(signatures, "--signature")

    async def _sign():
        try:
            session = await service.open_session(token)
            for key, value in value_pairs:
                session.set_value(_field_id(session, key), value)
            for key, path in signature_pairs:
                session.set_signature(_field_id(session, key), Path(path).read_bytes())
            while session.step != SigningStep.SIGNATURE:
                session.advance()
            return session, await session.submit()
        finally:
            await drain()

    try:
        session, record = asyncio.run(_sign())
    except FieldValidationError as exc:
        _fail("Missing required fields: " + ", ".join(f.name for f in exc.missing))
    except (PageSignError, OSError) as exc:
        _fail(str(exc))

    console.print(
        Panel(
            f"[bold green]Document signed![/]\n\n"
            f"  Request:  {session.context.request.title}\n"
            f"  Signer:   {session.context.recipient.name}\n"
            f"  Stored:   {record.final_document_path}\n"
            f"  Hash:     {record.document_hash[:16]}...",
            title="PageSign",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the PageSign API server."""
    import uvicorn

    from .api import app, configure

    configure(service=ctx.obj["service"])
    console.print(
        f"[bold]PageSign API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
