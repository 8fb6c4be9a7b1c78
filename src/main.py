"""Main application entry point for segmentry."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from api.dependencies import close_services, init_services
from services.validation_engine import ValidationAlreadyRunning
from utils.config import load_config, validate_config
from utils.logging import setup_logging_from_config

logger = logging.getLogger(__name__)
console = Console()


class ProgressBarCallback:
    """Turns validation progress events into a tqdm bar."""

    def __init__(self):
        self.bar: Optional[tqdm] = None

    async def __call__(self, job_id: str, event: dict) -> None:
        if event.get("type") != "progress":
            return
        total = event.get("total_videos") or 0
        if self.bar is None:
            self.bar = tqdm(total=total, desc="Validating", unit="video", leave=True)
        self.bar.total = total
        self.bar.n = event.get("processed_videos") or 0
        current = event.get("current_video") or {}
        if current.get("title"):
            self.bar.set_postfix_str(current["title"][:40])
        self.bar.refresh()

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()


def print_job_summary(job: dict) -> None:
    """Print a per-video results table for a finished job."""
    table = Table(title=f"Validation job {job['id']} ({job['status']})")
    table.add_column("Video", style="cyan")
    table.add_column("Result")
    table.add_column("Checked", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Error", style="dim")

    failed = 0
    for video in job.get("videos") or []:
        meta = (video.get("summary") or {}).get("meta") or {}
        if video.get("ok") is None:
            result = "[yellow]pending[/yellow]"
        elif video["ok"]:
            result = "[green]ok[/green]"
        else:
            result = "[red]broken[/red]"
            failed += 1
        table.add_row(
            video.get("title") or video.get("video_id"),
            result,
            str(meta.get("total_checked", "-")),
            str(meta.get("total_failed", "-")),
            video.get("error") or "",
        )

    console.print(table)
    console.print(
        f"[bold]{job.get('processed_videos', 0)}/{job.get('total_videos', 0)}[/bold] processed, "
        f"[bold red]{failed}[/bold red] broken"
    )


async def run_validate_all(config: dict, mirror: bool) -> int:
    services = await init_services(config)
    progress = ProgressBarCallback()
    services.engine.publisher = progress
    try:
        try:
            job = await services.engine.recover_interrupted()
            if job is None:
                job = await services.engine.start(mirror=mirror)
            await services.engine.wait(job.id)
        except ValidationAlreadyRunning as e:
            console.print(f"[red]{e}[/red]")
            return 1
        finally:
            progress.close()

        job_dict = await services.engine.get_job(job.id)
        print_job_summary(job_dict)
        return 0 if job_dict["status"] == "finished" else 1
    finally:
        await close_services()


async def run_check_video(config: dict, video_id: str) -> int:
    services = await init_services(config)
    try:
        outcome = await services.status_service.check_video_by_id(video_id)
        if outcome is None:
            console.print(f"[red]Video {video_id} not found[/red]")
            return 1
        color = {"working": "green", "broken": "red"}.get(outcome["status"], "yellow")
        console.print(f"Video {video_id}: [{color}]{outcome['status']}[/{color}]")
        if outcome.get("probe") and outcome["probe"].get("error"):
            console.print(f"  [dim]{outcome['probe']['error']}[/dim]")
        return 0 if outcome["status"] == "working" else 1
    finally:
        await close_services()


async def run_playlist(config: dict, video_id: str, quality: str) -> int:
    from services.playlist import PlaylistError

    services = await init_services(config)
    try:
        playlist = await services.playlists.build_playlist(video_id, quality)
    except PlaylistError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    finally:
        await close_services()
    sys.stdout.write(playlist.body)
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Segmentry HLS segment validation and delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  segmentry serve                       # Run the API server
  segmentry validate-all --mirror       # Validate every video, mirroring segments
  segmentry check-video <video_id>      # Quick status probe of one video
  segmentry playlist <video_id> 720p    # Print a signed playlist
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    validate = subparsers.add_parser("validate-all", help="Run one validation job in the foreground")
    validate.add_argument("--mirror", action="store_true", help="Copy confirmed segments into the mirror store")

    check = subparsers.add_parser("check-video", help="Probe one video and record its status")
    check.add_argument("video_id")

    playlist = subparsers.add_parser("playlist", help="Print the playlist of a video quality")
    playlist.add_argument("video_id")
    playlist.add_argument("quality")

    args = parser.parse_args()

    config = load_config()
    setup_logging_from_config(config)

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        from api.server import create_app

        uvicorn.run(create_app(config), host=args.host, port=args.port)
        return

    try:
        if args.command == "validate-all":
            code = asyncio.run(run_validate_all(config, mirror=args.mirror))
        elif args.command == "check-video":
            code = asyncio.run(run_check_video(config, args.video_id))
        else:
            code = asyncio.run(run_playlist(config, args.video_id, args.quality))
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        code = 0
    except Exception as e:
        logger.error(f"Application error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
