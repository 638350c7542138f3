import argparse
import sys
import time

from . import ffmpeg_runner
from .config import configure_logging, resolve_config
from .discovery import discover
from .queue.errors import ConfigError, QueueError
from .queue.models import VideoStatus
from .runtime import build_runtime


def _add_storage_args(parser):
    parser.add_argument("--db", type=str, help="Queue database path")
    parser.add_argument(
        "--memory", action="store_true", help="Use a throwaway in-memory store"
    )


def _load_config(args):
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=getattr(args, "config", None))
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(2)
    configure_logging(config)
    return config


def _print_stats(stats):
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Unprocessed:          {stats['unprocessed']}")
    print(f"Pending:              {stats['pending']}")
    print(f"Processing:           {stats['processing']}")
    print(f"Completed:            {stats['completed']}")
    print(f"Failed:               {stats['failed']}")
    print(f"Total:                {stats['total']}")
    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(
        prog="transcode-queue", description="Video transcoding job queue"
    )
    parser.add_argument("--config", "-c", type=str, help="Extra YAML config file")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the console API (and workers)")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--videos", type=str, help="Videos root directory")
    serve_parser.add_argument("--output", "-o", type=str, help="Output directory")
    serve_parser.add_argument("--workers", "-w", type=int, help="Concurrent transcodes")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="API only; run workers elsewhere"
    )
    _add_storage_args(serve_parser)

    # DISCOVER
    discover_parser = subparsers.add_parser(
        "discover", help="Record new source files as unprocessed videos"
    )
    discover_parser.add_argument("--videos", type=str, help="Videos root directory")
    _add_storage_args(discover_parser)

    # WORK
    work_parser = subparsers.add_parser("work", help="Run transcoding workers")
    work_parser.add_argument("--videos", type=str, help="Videos root directory")
    work_parser.add_argument("--output", "-o", type=str, help="Output directory")
    work_parser.add_argument("--workers", "-w", type=int, help="Concurrent transcodes")
    work_parser.add_argument("--job-timeout", type=float, help="Per-job timeout (s)")
    work_parser.add_argument(
        "--drain", action="store_true", help="Exit once nothing is pending or running"
    )
    _add_storage_args(work_parser)

    # QUEUE subcommands (status, retry, reclaim)
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage the queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show job counts per status")
    _add_storage_args(status_parser)

    retry_parser = queue_subparsers.add_parser("retry", help="Move failed jobs back to pending")
    retry_parser.add_argument("ids", nargs="*", help="Job ids (default: every failed job)")
    _add_storage_args(retry_parser)

    reclaim_parser = queue_subparsers.add_parser(
        "reclaim", help="Fail processing jobs whose worker stopped heartbeating"
    )
    reclaim_parser.add_argument(
        "--stale-after", type=float, help="Seconds without heartbeat (default: config)"
    )
    _add_storage_args(reclaim_parser)

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args()

    if args.command == "check":
        print("Checking dependencies...")
        if ffmpeg_runner.check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "serve":
        import uvicorn

        from .api.main import create_app

        config = _load_config(args)
        uvicorn.run(
            create_app(config),
            host=config.api.host,
            port=config.api.port,
            log_level=config.logging.level.lower(),
        )

    elif args.command == "discover":
        config = _load_config(args)
        runtime = build_runtime(config)
        try:
            created = discover(
                runtime.store,
                config.videos.root,
                extensions=config.videos.extensions,
                recursive=config.videos.recursive,
            )
        except FileNotFoundError as e:
            print(f"❌ {e}")
            sys.exit(1)
        finally:
            runtime.close()
        for job in created:
            print(f"  + {job.id} ({job.original_size} bytes)")
        print(f"Discovered {len(created)} new videos.")

    elif args.command == "work":
        config = _load_config(args)
        runtime = build_runtime(config)
        pool = runtime.worker_pool()
        try:
            if args.drain:
                summary = pool.run_until_idle(show_progress=True)
                print("\n" + "=" * 60)
                print("PROCESSING SUMMARY")
                print("=" * 60)
                print(f"Completed:            {summary['completed']}")
                print(f"Failed:               {summary['failed']}")
                print("=" * 60)
            else:
                pool.start()
                print(f"Running {pool.n_workers} workers. Press Ctrl+C to stop.")
                try:
                    while True:
                        time.sleep(1)
                except KeyboardInterrupt:
                    print("\nStopping workers (waiting for running jobs)...")
                finally:
                    pool.stop()
        finally:
            runtime.close()

    elif args.command == "queue":
        if args.queue_command is None:
            queue_parser.print_help()
            return

        config = _load_config(args)
        runtime = build_runtime(config)
        try:
            if args.queue_command == "status":
                _print_stats(runtime.query.stats())

            elif args.queue_command == "retry":
                if args.ids:
                    failures = 0
                    for job_id in args.ids:
                        try:
                            runtime.enqueue.retry(job_id)
                            print(f"  ↻ {job_id}")
                        except QueueError as e:
                            failures += 1
                            print(f"  ❌ {job_id}: {e.message}")
                    if failures:
                        sys.exit(1)
                else:
                    count = runtime.enqueue.retry_all_failed()
                    print(f"Retried {count} failed jobs.")

            elif args.queue_command == "reclaim":
                stale_after = args.stale_after or config.workers.stale_after_s
                if not stale_after:
                    print("❌ Stale reclaim is disabled (workers.stale_after_s is null).")
                    sys.exit(1)
                count = runtime.dispatcher.reclaim_stale(stale_after)
                print(f"Reclaimed {count} stale jobs (marked {VideoStatus.FAILED.value}).")
        finally:
            runtime.close()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
