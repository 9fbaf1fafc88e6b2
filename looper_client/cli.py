"""looper-client — command-line front end for the replica.

Every command opens a session (full tree + song fetch), performs its action
through the same gateway the interactive client uses, waits for the
outgoing requests, and exits.  ``watch`` keeps the session alive, runs the
update poller and the transport clock, and prints the tree after every
batch that changed it.

Exit codes:
  0 — success
  1 — unknown entity, rejected create, or protocol violation
  3 — network / server error

Examples::

    looper-client show
    looper-client new-take 0 1 "Verse" --type Audio
    looper-client mute 0 1 4 --off
    looper-client echo 0 2
    looper-client watch --base-url http://looper.local:8000
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import httpx
import typer

from looper_client.actions import LocalActionGateway
from looper_client.api import JSONObject, LooperApiClient
from looper_client.clock import TransportClock
from looper_client.config import settings
from looper_client.errors import ExitCode, LooperClientError
from looper_client.invariants import get_take_midi_mute
from looper_client.models import Synth, TakePatch, TakeType
from looper_client.poller import UpdatePoller
from looper_client.state import ReplicaContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

cli = typer.Typer(
    name="looper-client",
    help="Client-side replica of a live looper: inspect, edit and follow.",
    no_args_is_help=True,
)

_BASE_URL_OPTION = typer.Option(
    None, "--base-url", "-u", help="Server root. Defaults to LOOPER_BASE_URL."
)


# ---------------------------------------------------------------------------
# Session plumbing
# ---------------------------------------------------------------------------


def _make_api(base_url: str | None) -> LooperApiClient:
    return LooperApiClient(base_url=base_url)


@contextlib.asynccontextmanager
async def _session(
    base_url: str | None,
) -> AsyncIterator[tuple[ReplicaContext, LooperApiClient, LocalActionGateway]]:
    """Open the API, load the replica, and drain outgoing requests on exit."""
    async with _make_api(base_url) as api:
        context = ReplicaContext()
        context.tree.load(await api.fetch_synths())
        context.song.apply_snapshot(await api.fetch_song(), now=_now())
        gateway = LocalActionGateway(
            context, api, alert=lambda msg: typer.echo(f"❌ {msg}", err=True)
        )
        try:
            yield context, api, gateway
        finally:
            await gateway.drain()


def _now() -> float:
    return time.monotonic()


def _run(action: Callable[[], Awaitable[T]]) -> T:
    """Run *action* on a fresh event loop and map errors to exit codes."""
    try:
        return asyncio.run(action())  # type: ignore[arg-type]  # Awaitable vs Coroutine
    except typer.Exit:
        raise
    except LooperClientError as exc:
        typer.echo(f"❌ {exc}", err=True)
        raise typer.Exit(code=int(ExitCode.USER_ERROR))
    except httpx.HTTPError as exc:
        typer.echo(f"❌ Network error: {exc}", err=True)
        raise typer.Exit(code=int(ExitCode.NETWORK_ERROR))


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@cli.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_tree(synths: list[Synth]) -> str:
    """Render the replica as an indented outline."""
    lines: list[str] = []
    for synth in synths:
        lines.append(f"Synth {synth.id}: {synth.name}")
        for chain in synth.chains:
            flags = "".join(
                tag for tag, on in ((" [echo]", chain.echo), (" [midi]", chain.midi)) if on
            )
            lines.append(f"  Chain {chain.id}: {chain.name}{flags}")
            for take in chain.takes:
                kind = take.type.value if take.type is not None else "?"
                line = f"    Take {take.id}: {take.name} ({kind}, {take.state or '?'})"
                line += " muted" if take.muted else " playing"
                if take.is_audio() and take.associated_midi_takes:
                    midi = "muted" if get_take_midi_mute(chain, take) else "playing"
                    line += f" midi={midi} {take.associated_midi_takes}"
                lines.append(line)
    return "\n".join(lines) if lines else "(no synths)"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command("show")
def show(base_url: str | None = _BASE_URL_OPTION) -> None:
    """Print the current tree and song state."""

    async def _show() -> None:
        async with _session(base_url) as (context, _api, _gateway):
            typer.echo(format_tree(context.tree.synths))
            typer.echo(f"Loop length: {context.song.loop_length}")

    _run(_show)


@cli.command("watch")
def watch(
    base_url: str | None = _BASE_URL_OPTION,
    show_clock: bool = typer.Option(
        False, "--clock", help="Also print the projected transport position."
    ),
) -> None:
    """Follow the update stream and print the tree whenever it changes."""

    async def _watch() -> None:
        async with _session(base_url) as (context, api, _gateway):
            typer.echo(format_tree(context.tree.synths))
            poller = UpdatePoller(context, api)

            def _print_batch(ctx: ReplicaContext, entries: list[JSONObject]) -> None:
                if any(isinstance(e, dict) and "synths" in (e.get("action") or {}) for e in entries):
                    typer.echo(f"--- update {ctx.next_update_id - 1}")
                    typer.echo(format_tree(ctx.tree.synths))

            poller.add_listener(_print_batch)
            clock = TransportClock(
                context.song, on_tick=_print_position if show_clock else _ignore_position
            )
            tasks = [
                asyncio.create_task(poller.run(), name="looper-poller"),
                asyncio.create_task(clock.run(), name="looper-clock"),
            ]
            try:
                await asyncio.gather(*tasks)
            finally:
                poller.stop()
                clock.stop()
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    try:
        _run(_watch)
    except KeyboardInterrupt:
        typer.echo("Stopped.")


@cli.command("new-synth")
def new_synth(name: str, base_url: str | None = _BASE_URL_OPTION) -> None:
    """Create a synth."""

    async def _new() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            synth = await gateway.create_synth(name)
            typer.echo(f"✅ Synth {synth.id}: {synth.name}")

    _run(_new)


@cli.command("new-chain")
def new_chain(synth_id: int, name: str, base_url: str | None = _BASE_URL_OPTION) -> None:
    """Create a chain in a synth."""

    async def _new() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            chain = await gateway.create_chain(synth_id, name)
            typer.echo(f"✅ Chain {chain.id}: {chain.name}")

    _run(_new)


@cli.command("new-take")
def new_take(
    synth_id: int,
    chain_id: int,
    name: str,
    take_type: TakeType = typer.Option(TakeType.AUDIO, "--type", "-t", help="Audio or Midi."),
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Create a take (an audio take also gets a MIDI companion)."""

    async def _new() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            take = await gateway.create_take(synth_id, chain_id, name, take_type)
            typer.echo(f"✅ Take {take.id}: {take.name}")

    _run(_new)


@cli.command("mute")
def mute(
    synth_id: int,
    chain_id: int,
    take_id: int,
    off: bool = typer.Option(False, "--off", help="Unmute instead of mute."),
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Mute (or unmute) a take's audio; unmuting also unmutes its MIDI."""

    async def _mute() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            batch = gateway.set_take_audio_mute(synth_id, chain_id, take_id, not off)
            typer.echo(_describe_mutes(batch))

    _run(_mute)


@cli.command("midi-mute")
def midi_mute(
    synth_id: int,
    chain_id: int,
    take_id: int,
    off: bool = typer.Option(False, "--off", help="Unmute instead of mute."),
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Mute (or unmute) a take's MIDI path."""

    async def _mute() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            batch = gateway.set_take_midi_mute(synth_id, chain_id, take_id, not off)
            typer.echo(_describe_mutes(batch))

    _run(_mute)


@cli.command("echo")
def echo(
    synth_id: int,
    chain_id: int,
    off: bool = typer.Option(False, "--off", help="Turn echo off instead of on."),
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Make a chain the synth's echo chain (clears its siblings)."""

    async def _echo() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            batch = gateway.set_chain_echo(synth_id, chain_id, not off)
            typer.echo(", ".join(f"chain {p.id} echo={p.echo}" for p in batch))

    _run(_echo)


@cli.command("finish")
def finish(
    synth_id: int,
    chain_id: int,
    take_id: int,
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Stop recording a take."""

    async def _finish() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            gateway.finish_recording(synth_id, chain_id, take_id)

    _run(_finish)


@cli.command("loop")
def loop(
    length: float = typer.Argument(..., help="Loop length in seconds."),
    beats: int = typer.Argument(..., help="Beats per loop."),
    base_url: str | None = _BASE_URL_OPTION,
) -> None:
    """Set the song's loop length."""

    async def _loop() -> None:
        async with _session(base_url) as (_context, _api, gateway):
            gateway.set_loop_length(length, beats)

    _run(_loop)


def _print_position(position: float | None, loop_length: float | None) -> None:
    if position is None:
        return
    total = f"{loop_length:.2f}" if loop_length else "?"
    typer.echo(f"\r⏱️  {position:6.2f} / {total}s", nl=False)


def _ignore_position(position: float | None, loop_length: float | None) -> None:
    pass


def _describe_mutes(batch: list[TakePatch]) -> str:
    return ", ".join(f"take {p.id} muted={p.muted}" for p in batch)


if __name__ == "__main__":
    cli()
