"""CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

from .agent import DEFAULT_SYSTEM_PROMPT, ConversationalAgent, build_backend
from .config import Config, resolve_config, save_config
from .device_manager import DeviceManager
from .errors import AgentError, ConfigurationError
from .events import AudioListener, ManagerListener
from .logging_utils import setup_logging
from .models import TranscriptEvent
from .recorder import VIRTUAL_NAME_MARKERS, SoundDeviceSource, list_input_devices, looks_like_loopback
from .renderer import render_recap_note
from .storage import save_recap, save_transcript
from .transcriber import DeepgramSession
from .transcript import TranscriptManager, display_source

PROMPT = "MeetingTwin > "
RECAP_PROMPT = "Write a recap of the meeting. Format the output in Markdown."


class ConsoleListener(ManagerListener):
    """Prints device activity and records confident transcripts."""

    def __init__(self, transcript: TranscriptManager, confidence_threshold: float) -> None:
        self.transcript = transcript
        self.confidence_threshold = confidence_threshold

    def on_transcription(self, device_id: str, event: TranscriptEvent) -> None:
        if event.confidence is not None and event.confidence < self.confidence_threshold:
            return
        source = display_source(False, event.source or device_id, event.speaker)
        print(f"\n[{source}]: {event.text}")
        self.transcript.add_entry(event.timestamp, source, event.text, event.confidence)
        print(PROMPT, end="", flush=True)

    def on_device_connected(self, device_id: str) -> None:
        print(f"\n[{device_id}] connected.")

    def on_device_disconnected(self, device_id: str) -> None:
        print(f"\n[{device_id}] disconnected, reconnecting...")

    def on_device_error(self, device_id: str, error: Exception) -> None:
        print(f"\n[{device_id}] error: {error}", file=sys.stderr)


class _LevelPrinter(AudioListener):
    def on_level(self, db: float) -> None:
        bar = "#" * max(0, int((db + 60) / 2))
        print(f"{db:7.1f} dBFS {bar}")

    def on_error(self, error: Exception) -> None:
        print(f"Capture error: {error}", file=sys.stderr)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    def _reader() -> None:
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            # Event loop already closed during shutdown.
            return

    threading.Thread(target=_reader, name="stdin-reader", daemon=True).start()


async def _next_line(lines: asyncio.Queue, stop: asyncio.Event) -> Optional[str]:
    getter = asyncio.ensure_future(lines.get())
    stopper = asyncio.ensure_future(stop.wait())
    done, pending = await asyncio.wait(
        {getter, stopper}, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()
    if getter in done:
        return getter.result()
    return None


async def _finish_meeting(
    agent: ConversationalAgent,
    transcript: TranscriptManager,
    config: Config,
    started_at: datetime,
) -> None:
    now = datetime.now()
    transcript_path = save_transcript(config.meetings_dir, transcript.get_transcript(), now)
    print(f"Transcript saved: {transcript_path}")
    if not config.agent.skip_llm:
        try:
            recap = await agent.query(RECAP_PROMPT)
        except AgentError as exc:
            print(f"\nCould not generate a recap: {exc}\n")
        else:
            print(f"\nMeeting Recap:\n{recap}\n")
            note = render_recap_note(
                title=f"Meeting {started_at:%Y-%m-%d %H:%M}",
                date=started_at.strftime("%Y-%m-%d"),
                recap=recap,
                sources=sorted({entry.source for entry in transcript.entries}),
                started_at=started_at.isoformat(timespec="seconds"),
                ended_at=now.isoformat(timespec="seconds"),
                transcript_filename=os.path.basename(transcript_path),
            )
            print(f"Recap saved: {save_recap(config.meetings_dir, note, now)}")


async def run_meeting(config: Config) -> int:
    logger = logging.getLogger("meetingtwin")
    loop = asyncio.get_running_loop()
    started_at = datetime.now()

    if not config.transcription.api_key:
        print("Error: DEEPGRAM_API_KEY must be set in .env or the config file.", file=sys.stderr)
        return 1

    transcript = TranscriptManager()
    try:
        backend = None
        if not config.agent.skip_llm:
            backend = build_backend(
                config.agent.provider,
                config.agent.api_key,
                config.agent.model,
                config.agent.max_tokens,
            )
        agent = ConversationalAgent(
            transcript,
            backend,
            system_prompt=config.agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
            skip_llm=config.agent.skip_llm,
        )
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    manager = DeviceManager(
        audio_factory=lambda cfg: SoundDeviceSource(
            device_id=cfg.device_id,
            device_name=cfg.device_name,
            sample_rate=cfg.sample_rate,
            loop=loop,
        ),
        session_factory=lambda cfg: DeepgramSession(
            cfg.credential,
            language=config.transcription.language,
            model=config.transcription.model,
            keepalive_seconds=config.transcription.keepalive_seconds,
        ),
        policy=config.reconnect,
        loop=loop,
    )
    for device_id, device_config in config.device_configs().items():
        manager.add_device(device_id, device_config)
    manager.subscribe(ConsoleListener(transcript, config.confidence_threshold))

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s unavailable", sig)

    print("--- MeetingTwin AI Assistant ---")
    print("Initializing audio and transcription...")
    if manager.start_all() == 0:
        print("No valid audio devices configured. Set AUDIO_DEVICE_ID_MIC / AUDIO_DEVICE_ID_SYSTEM.")

    lines: asyncio.Queue = asyncio.Queue()
    _start_stdin_reader(loop, lines)
    finished = False
    try:
        while not finished:
            print(PROMPT, end="", flush=True)
            line = await _next_line(lines, stop)
            if line is None:
                break
            text = line.strip()
            command = text.lower()
            if command in ("exit", "quit"):
                await _finish_meeting(agent, transcript, config, started_at)
                finished = True
            elif command == "history":
                print("\n--- Meeting History ---")
                print(transcript.get_transcript())
                print("------------------------\n")
            elif text:
                print("Agent is thinking...")
                try:
                    reply = await agent.query(text)
                except AgentError as exc:
                    print(f"\nError querying agent: {exc}\n")
                else:
                    print(f"\nAgent: {reply}\n")
    finally:
        print("\nShutting down gracefully...")
        manager.stop_all()
        if not finished and len(transcript):
            print(f"Transcript saved: {save_transcript(config.meetings_dir, transcript.get_transcript())}")
    return 0


async def monitor_levels(device_id: Optional[str], device_name: Optional[str], seconds: float) -> int:
    source = SoundDeviceSource(device_id=device_id, device_name=device_name)
    source.subscribe(_LevelPrinter())
    source.start()
    print(f"Monitoring device {source.device_index} at {source.sample_rate}Hz. Press Ctrl+C to stop early.")
    try:
        await asyncio.sleep(seconds)
    finally:
        source.stop()
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(prog="meetingtwin")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")
    devices_cmd.add_argument(
        "--detail",
        action="store_true",
        help="Show detailed device channel info.",
    )

    levels_cmd = sub.add_parser("levels")
    levels_cmd.add_argument("--device", help="Device ID to monitor.")
    levels_cmd.add_argument("--match", help="Device name substring.")
    levels_cmd.add_argument("--seconds", type=float, default=6.0, help="Test duration.")

    config_cmd = sub.add_parser("config")
    config_cmd.add_argument("path", help="Where to write a default config file.")
    config_cmd.add_argument("--force", action="store_true", help="Overwrite an existing file.")

    run_cmd = sub.add_parser("run")
    run_cmd.add_argument("--config", default="meetingtwin_config.yml", help="Config.")
    run_cmd.add_argument("--env-file", help="Path to a .env file.")
    run_cmd.add_argument("--meetings-dir", help="Where transcripts and recaps go.")
    run_cmd.add_argument("--log-dir", default="logs", help="Log directory.")
    run_cmd.add_argument("--debug", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(argv)
    if args.command == "devices":
        devices = list_input_devices()
        if args.match:
            devices = [
                d for d in devices if args.match.lower() in d.get("name", "").lower()
            ]
        for device in devices:
            name = device.get("name", "Unknown")
            line = f"[{device.get('index', '?')}] {name} (inputs: {device.get('max_input_channels', 0)})"
            if args.detail:
                extra = []
                if "default_samplerate" in device:
                    extra.append(f"rate={device.get('default_samplerate')}")
                if "hostapi" in device:
                    extra.append(f"hostapi={device.get('hostapi')}")
                if extra:
                    line = f"{line} [{', '.join(extra)}]"
            if looks_like_loopback(name, VIRTUAL_NAME_MARKERS):
                line = f"{line}  *** POTENTIAL LOOPBACK DEVICE ***"
            print(line)
        return 0

    if args.command == "levels":
        try:
            return asyncio.run(monitor_levels(args.device, args.match, args.seconds))
        except KeyboardInterrupt:
            return 0

    if args.command == "config":
        if os.path.exists(args.path) and not args.force:
            print(f"{args.path} already exists. Use --force to overwrite.")
            return 1
        save_config(args.path, Config())
        print(f"Wrote {args.path}")
        return 0

    if args.command == "run":
        config = resolve_config(args.config, env_file=args.env_file)
        if args.meetings_dir:
            config.meetings_dir = args.meetings_dir
        _, log_path = setup_logging(
            args.log_dir,
            level=logging.DEBUG if args.debug else logging.INFO,
            include_websockets=args.debug,
        )
        print(f"Logging to {log_path}")
        return asyncio.run(run_meeting(config))

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
