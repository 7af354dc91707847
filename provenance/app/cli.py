"""Command-line entry point: sign, verify, and run the blob worker."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Optional

import click
import orjson
from pydantic import ValidationError

from provenance.app.core.config import Settings
from provenance.app.core.errors import ContentCredentialError
from provenance.app.core.identity import build_credential
from provenance.app.main import build_http_client
from provenance.app.pipeline.orchestrator import ContentCredentialPipeline
from provenance.app.services.azure_api import AzureArtifactSigningClient
from provenance.app.services.certificates import load_trust_anchors
from provenance.app.verification.verifier import verify_asset
from provenance.app.workers.blob_worker import run_worker

logger = logging.getLogger("provenance.cli")


def _load_settings(**overrides: Any) -> Settings:
    """Environment settings with command-line overrides applied."""
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Settings(**values)
    except ValidationError as exc:
        raise click.UsageError(
            "Invalid signing configuration:\n"
            + "\n".join(
                f"  {'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
        ) from exc


def _install_cancel_handlers(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Platforms without loop signal support fall back to
            # KeyboardInterrupt task cancellation.
            pass


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """Embed and verify signed content credentials in media assets."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ----------------------------------------------------------------------
# sign
# ----------------------------------------------------------------------

@cli.command()
@click.option(
    "--input", "-i", "input_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Asset to sign (PNG or JPEG)",
)
@click.option(
    "--output", "-o", "output_path",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to write the signed asset",
)
@click.option(
    "--manifest-definition", "-m",
    help="Manifest definition file path or inline JSON",
)
@click.option("--endpoint", help="Signing data-plane endpoint")
@click.option("--account", help="Signing account name")
@click.option("--certificate-profile", help="Certificate profile name")
@click.option(
    "--algorithm",
    type=click.Choice(["RS256", "RS384", "RS512", "PS256", "PS384", "PS512"]),
    help="Signature algorithm",
)
@click.option(
    "--time-authority-url",
    help="RFC 3161 timestamp authority to countersign the signature",
)
@click.option(
    "--trust-anchors",
    type=click.Path(exists=True, dir_okay=False),
    help="PEM bundle of accepted root certificates",
)
@click.pass_context
def sign(
    ctx: click.Context,
    input_path: Path,
    output_path: Path,
    manifest_definition: Optional[str],
    endpoint: Optional[str],
    account: Optional[str],
    certificate_profile: Optional[str],
    algorithm: Optional[str],
    time_authority_url: Optional[str],
    trust_anchors: Optional[str],
) -> None:
    """Sign INPUT and write the credentialed asset to OUTPUT.

    The output file is only written once the embedded credential has
    been re-verified.
    """
    settings = _load_settings(
        signing_endpoint=endpoint,
        signing_account=account,
        certificate_profile=certificate_profile,
        algorithm=algorithm,
        manifest_definition=manifest_definition,
        time_authority_url=time_authority_url,
        trust_anchors_path=trust_anchors,
    )

    async def _run():
        cancel_event = asyncio.Event()
        _install_cancel_handlers(cancel_event)

        credential = build_credential(settings.identity_client_id)
        async with build_http_client() as http_client:
            try:
                signer = AzureArtifactSigningClient(
                    credential=credential,
                    http_client=http_client,
                    settings=settings,
                )
                pipeline = ContentCredentialPipeline.from_settings(
                    settings, signer=signer
                )
                return await pipeline.sign_file(
                    input_path, output_path, cancel_event=cancel_event
                )
            finally:
                await credential.close()

    try:
        result = asyncio.run(_run())
    except ContentCredentialError as exc:
        # Manifest definition errors surface before any run starts
        raise click.ClickException(f"{exc.reason.value}: {exc}") from exc
    except RuntimeError as exc:
        # Unreadable trust anchor bundle
        raise click.ClickException(str(exc)) from exc

    if not result.succeeded:
        click.echo(
            f"Signing failed ({result.failure_reason.value}): "
            f"{result.failure_detail}",
            err=True,
        )
        ctx.exit(1)

    click.echo(f"Signed {input_path} -> {output_path}")
    click.echo(f"  job:    {result.job_id}")
    click.echo(f"  digest: {result.tbs_digest}")


# ----------------------------------------------------------------------
# verify
# ----------------------------------------------------------------------

@cli.command()
@click.argument(
    "asset",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.option(
    "--trust-anchors",
    type=click.Path(exists=True, dir_okay=False),
    help="PEM bundle of accepted root certificates",
)
@click.pass_context
def verify(
    ctx: click.Context,
    asset: Path,
    as_json: bool,
    trust_anchors: Optional[str],
) -> None:
    """Verify the content credential embedded in ASSET."""
    anchors = []
    if trust_anchors:
        try:
            anchors = load_trust_anchors(trust_anchors)
        except RuntimeError as exc:
            raise click.UsageError(str(exc)) from exc

    report = verify_asset(asset.read_bytes(), trust_anchors=anchors)

    if as_json:
        click.echo(
            orjson.dumps(
                report.model_dump(mode="json"),
                option=orjson.OPT_INDENT_2,
            ).decode("utf-8")
        )
    else:
        status = "PASSED" if report.passed else "FAILED"
        click.echo(f"{asset}: {status}")
        if report.claim is not None:
            click.echo(f"  title:     {report.claim.title}")
            click.echo(f"  generator: {report.claim.claim_generator}")
            click.echo(f"  signed at: {report.signed_at}")
            click.echo(f"  time from: {report.timestamp_source.value}")
            if report.trusted is not None:
                click.echo(f"  trusted:   {report.trusted}")
            click.echo(f"  ancestry:  {report.ancestry_depth}")
        for finding in report.findings:
            click.echo(
                f"  [{finding.severity.value}] {finding.finding_id}: "
                f"{finding.description}"
            )

    if not report.passed:
        ctx.exit(1)


# ----------------------------------------------------------------------
# worker
# ----------------------------------------------------------------------

@cli.command()
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Sign every blob on the first page of the input container."""
    settings = _load_settings()
    try:
        summary = asyncio.run(run_worker(settings))
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    click.echo(
        f"Processed {summary.processed} blob(s): "
        f"{len(summary.succeeded)} signed, {len(summary.failed)} failed"
    )
    if summary.failed:
        ctx.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
