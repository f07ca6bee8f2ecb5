#!/usr/bin/env python
"""
CLI management commands for RECETRA.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import click
from sqlalchemy.ext.asyncio import AsyncEngine
from structlog.contextvars import bound_contextvars

from recetra.db import create_engine, create_session_factory, init_db
from recetra.logging import configure_logging
from recetra.receipts.auth import CurrentUser, StaticAuthContext, UserRole
from recetra.receipts.db_store import SQLAlchemyReceiptStore
from recetra.receipts.dependencies import build_mock_providers, build_receipt_service
from recetra.receipts.exceptions import ReceiptError, ReceiptNotFoundError
from recetra.receipts.identifiers import qr_payload
from recetra.receipts.models import Channel, PaymentMethod, Receipt
from recetra.receipts.money_utils import format_amount
from recetra.receipts.service import ReceiptService
from recetra.settings import Settings, get_settings


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings: Settings
    engine_factory: Callable[[str | None], AsyncEngine]
    providers_factory: Callable[[Settings.ProviderSettings], tuple[Any, Any, Any]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        settings=get_settings(),
        engine_factory=create_engine,
        providers_factory=build_mock_providers,
    )


def _run(ctx: click.Context, action: Callable[[ReceiptService], Awaitable[None]]) -> None:
    """Run ``action`` against a service backed by the configured database."""
    deps = _get_cli_dependencies()
    user: CurrentUser = ctx.obj["user"]

    async def _main() -> None:
        engine = deps.engine_factory(ctx.obj["database_url"])
        try:
            await init_db(engine)
            payment, email, sms = deps.providers_factory(deps.settings.providers)
            service = build_receipt_service(
                StaticAuthContext(user),
                store=SQLAlchemyReceiptStore(create_session_factory(engine)),
                payment_provider=payment,
                email_provider=email,
                sms_provider=sms,
                settings=deps.settings,
            )
            try:
                await action(service)
            finally:
                await service.dispatcher.drain()
        finally:
            await engine.dispose()

    configure_logging(deps.settings.observability)
    try:
        with bound_contextvars(command=ctx.command.name, acting_user=user.id):
            asyncio.run(_main())
    except ReceiptError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e


def _echo_receipt(receipt: Receipt) -> None:
    click.echo(f"Receipt:      {receipt.receipt_number}")
    click.echo(f"ID:           {receipt.id}")
    click.echo(f"Payer:        {receipt.payer}")
    click.echo(f"Amount:       {format_amount(receipt.amount, receipt.currency)}")
    click.echo(f"Purpose:      {receipt.purpose} ({receipt.category})")
    click.echo(f"Organization: {receipt.organization}")
    click.echo(f"Issued by:    {receipt.issued_by} at {receipt.issued_at.isoformat()}")
    click.echo(f"Verify:       {qr_payload(receipt.verification_token)}")
    for channel in Channel:
        click.echo(f"{channel.value + ' status:':<14}{receipt.status_of(channel).value}")


@click.group()
@click.option("--database-url", default=None, help="Async database URL (defaults to settings)")
@click.option("--user-id", default="cli", show_default=True, help="Acting user ID")
@click.option("--user-name", default="CLI Operator", show_default=True, help="Acting user name")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.ENCODER.value,
    show_default=True,
    help="Acting user role",
)
@click.pass_context
def cli(ctx: click.Context, database_url: str | None, user_id: str, user_name: str, role: str) -> None:
    """RECETRA receipt lifecycle CLI."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url
    ctx.obj["user"] = CurrentUser(id=user_id, full_name=user_name, role=UserRole(role))


@cli.command("init-db")
@click.pass_context
def init_database(ctx: click.Context) -> None:
    """Create the receipt tables."""
    deps = _get_cli_dependencies()

    async def _init() -> None:
        engine = deps.engine_factory(ctx.obj["database_url"])
        try:
            await init_db(engine)
        finally:
            await engine.dispose()

    click.echo("Initializing database...")
    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--payer", required=True, help="Name of the payer")
@click.option("--amount", required=True, help="Amount paid, e.g. 500.00")
@click.option("--purpose", required=True, help="Purpose of the payment")
@click.option("--category", required=True, help="Payment category")
@click.option("--organization", required=True, help="Issuing organization")
@click.option("--org-code", default=None, help="Organization code (defaults to initials)")
@click.option("--currency", default=None, help="ISO currency code")
@click.option("--template", "template_id", default=None, help="Receipt template ID")
@click.option("--email", default=None, help="Payer email address")
@click.option("--phone", default=None, help="Payer phone number")
@click.option(
    "--payment-method",
    type=click.Choice([method.value for method in PaymentMethod]),
    default=PaymentMethod.PAYMONGO.value,
    show_default=True,
)
@click.option(
    "--notify-after-payment",
    is_flag=True,
    help="Hold email and SMS until payment completes",
)
@click.pass_context
def issue(
    ctx: click.Context,
    payer: str,
    amount: str,
    purpose: str,
    category: str,
    organization: str,
    org_code: str | None,
    currency: str | None,
    template_id: str | None,
    email: str | None,
    phone: str | None,
    payment_method: str,
    notify_after_payment: bool,
) -> None:
    """Issue a receipt and wait for its channels."""
    request = {
        "payer": payer,
        "amount": amount,
        "purpose": purpose,
        "category": category,
        "organization": organization,
        "organization_code": org_code,
        "currency": currency,
        "template_id": template_id,
        "payer_email": email,
        "payer_phone": phone,
        "payment_method": payment_method,
    }

    async def _issue(service: ReceiptService) -> None:
        receipt = await service.issue_receipt(
            request,
            notify_before_payment=False if notify_after_payment else None,
            wait_for_channels=True,
        )
        _echo_receipt(receipt)

    _run(ctx, _issue)


@cli.command()
@click.argument("receipt")
@click.pass_context
def show(ctx: click.Context, receipt: str) -> None:
    """Show a receipt by ID or receipt number."""

    async def _show(service: ReceiptService) -> None:
        try:
            found = await service.get_receipt(receipt)
        except ReceiptNotFoundError:
            found = await service.get_receipt_by_number(receipt)
        _echo_receipt(found)

    _run(ctx, _show)


@cli.command()
@click.argument("token")
@click.pass_context
def verify(ctx: click.Context, token: str) -> None:
    """Verify a token or QR payload."""

    async def _verify(service: ReceiptService) -> None:
        result = await service.verify_token(token)
        click.echo(f"Status: {result.status.value}")
        if result.summary:
            summary = result.summary
            click.echo(f"Receipt: {summary.receipt_number}")
            click.echo(f"Payer: {summary.payer}")
            click.echo(f"Amount: {format_amount(summary.amount, summary.currency)}")
            click.echo(f"Organization: {summary.organization}")
            click.echo(f"Payment: {summary.payment_status.value}")

    _run(ctx, _verify)


@cli.command()
@click.argument("receipt_id")
@click.argument("channel", type=click.Choice([channel.value for channel in Channel]))
@click.pass_context
def retry(ctx: click.Context, receipt_id: str, channel: str) -> None:
    """Retry a failed or skipped channel."""

    async def _retry(service: ReceiptService) -> None:
        outcome = await service.retry_channel(receipt_id, channel)
        click.echo(f"{outcome.channel.value}: {outcome.status.value} (attempt {outcome.attempt})")
        if outcome.error_message:
            click.echo(f"Error: {outcome.error_message}")

    _run(ctx, _retry)


@cli.command("list")
@click.option("--organization", default=None, help="Only this organization")
@click.option("--issuer", default=None, help="Only receipts issued by this user ID")
@click.pass_context
def list_receipts(ctx: click.Context, organization: str | None, issuer: str | None) -> None:
    """List receipts."""

    async def _list(service: ReceiptService) -> None:
        if organization:
            receipts = await service.list_organization_receipts(organization)
        elif issuer:
            receipts = await service.list_issued_receipts(issuer)
        else:
            receipts = await service.store.list_all()
        if not receipts:
            click.echo("No receipts found")
            return
        for r in receipts:
            click.echo(
                f"{r.receipt_number}  {r.payer:<24} "
                f"{format_amount(r.amount, r.currency):>14}  "
                f"payment={r.payment_status.value} email={r.email_status.value} "
                f"sms={r.sms_status.value}"
            )

    _run(ctx, _list)


@cli.command()
@click.option("--organization", default=None, help="Only this organization")
@click.option("--category", default=None, help="Only this category")
@click.option("--start", type=click.DateTime(), default=None, help="Issued on or after")
@click.option("--end", type=click.DateTime(), default=None, help="Issued before")
@click.option("--currency", default=None, help="Report currency (defaults to settings)")
@click.pass_context
def stats(
    ctx: click.Context,
    organization: str | None,
    category: str | None,
    start: datetime | None,
    end: datetime | None,
    currency: str | None,
) -> None:
    """Show receipt statistics."""

    async def _stats(service: ReceiptService) -> None:
        result = await service.get_statistics(
            organization=organization,
            category=category,
            start=_as_utc(start),
            end=_as_utc(end),
            currency=currency,
        )
        click.echo(f"Total receipts: {result.total_receipts}")
        click.echo(f"Total amount: {result.total_amount} {result.currency}")
        click.echo(f"This month: {result.receipts_this_month} ({result.amount_this_month})")
        for name, amount in sorted(result.amount_by_category.items()):
            click.echo(f"  {name}: {amount}")
        for code, total in sorted(result.amount_by_currency.items()):
            if code != result.currency:
                click.echo(f"Also collected in {code}: {total}")
        for channel, counts in result.status_counts.items():
            rendered = ", ".join(f"{status}={count}" for status, count in sorted(counts.items()))
            click.echo(f"{channel}: {rendered}")

    _run(ctx, _stats)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


if __name__ == "__main__":
    cli()
