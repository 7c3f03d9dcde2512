import argparse
import json
import sys
import time

from pydantic import ValidationError
from tqdm import tqdm

from .config import resolve_config, setup_logging
from .errors import ClipExportError, JobNotFoundError
from .ffmpeg_runner import FfmpegRunner, check_ffmpeg
from .jobs.factory import build_backends
from .jobs.models import ExportSize, JobStatus
from .jobs.processor import JobProcessor
from .jobs.submission import get_job_view, submit_job
from .jobs.worker import Worker
from .storage import create_blob_store


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clip-export", description="Asynchronous video clip export"
    )
    parser.add_argument("--config", type=str, help="YAML config file (overrides defaults)")
    parser.add_argument("--db", dest="db_path", type=str, help="Queue database path")
    parser.add_argument(
        "--queue-backend", choices=["sqlite", "redis"], help="Job store and queue backend"
    )
    parser.add_argument("--redis-url", type=str, help="Redis connection URL")
    parser.add_argument("--storage-backend", choices=["local", "s3"], help="Blob store backend")
    parser.add_argument("--storage-path", type=str, help="Root directory for local storage")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ERROR")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the worker loop")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after N jobs")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )
    worker_parser.add_argument(
        "--poll-interval", type=float, help="Seconds between polls of an empty queue"
    )

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Queue a clip export")
    submit_parser.add_argument("--source-key", required=True, help="Blob key of the source video")
    submit_parser.add_argument("--start", type=float, required=True, help="Trim start (s)")
    submit_parser.add_argument("--duration", type=float, required=True, help="Clip length, 3-6s")
    submit_parser.add_argument(
        "--size",
        required=True,
        choices=[size.value for size in ExportSize],
        help="Output resolution",
    )
    submit_parser.add_argument(
        "--remove-audio", action="store_true", help="Drop the audio stream"
    )
    submit_parser.add_argument(
        "--wait", action="store_true", help="Poll until the job finishes"
    )

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id", help="Job id")

    # QUEUE
    subparsers.add_parser("queue", help="Show queue depth")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=args.config)
    except FileNotFoundError as e:
        print(f"❌ {e}")
        sys.exit(1)
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}")
        sys.exit(1)

    setup_logging(config.logging)

    if args.command == "check":
        print("Checking dependencies...")
        report = check_ffmpeg(FfmpegRunner.from_config(config.transcode))
        if report["ok"]:
            print(f"✅ ffmpeg found: {report['path']}")
            print(f"   {report['version']}")
        else:
            print(f"❌ ffmpeg NOT available: {report['error']}")
            sys.exit(1)

    elif args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(config), host=args.host, port=args.port)

    elif args.command == "worker":
        run_worker(config, max_jobs=args.max_jobs, drain=args.drain)

    elif args.command == "submit":
        run_submit(config, args)

    elif args.command == "status":
        store, queue = build_backends(config.queue)
        try:
            view = get_job_view(
                store, create_blob_store(config.storage), args.job_id,
                config.storage.url_expires_s,
            )
        except JobNotFoundError:
            print(f"Job not found: {args.job_id}")
            sys.exit(1)
        finally:
            store.close()
        print(json.dumps(view, indent=2))

    elif args.command == "queue":
        store, queue = build_backends(config.queue)
        try:
            depth = queue.depth()
        finally:
            store.close()
        print(f"Queued jobs: {depth}")

    else:
        parser.print_help()


def run_worker(config, max_jobs=None, drain=False) -> int:
    store, queue = build_backends(config.queue)
    processor = JobProcessor(
        store,
        create_blob_store(config.storage),
        FfmpegRunner.from_config(config.transcode),
        temp_dir=config.worker.temp_dir,
        result_prefix=config.storage.result_prefix,
        progress_min_interval_s=config.worker.progress_min_interval_s,
        store_retries=config.worker.store_retries,
    )
    worker = Worker(
        queue,
        processor,
        poll_interval_s=config.worker.poll_interval_s,
        error_backoff_s=config.worker.error_backoff_s,
    )
    worker.install_signal_handlers()

    try:
        processed = worker.run(max_jobs=max_jobs, drain=drain)
    finally:
        store.close()

    print(f"Processed {processed} job(s)")
    return processed


def run_submit(config, args) -> None:
    store, queue = build_backends(config.queue)
    try:
        try:
            job = submit_job(
                store,
                queue,
                {
                    "sourceKey": args.source_key,
                    "startTime": args.start,
                    "duration": args.duration,
                    "size": args.size,
                    "removeAudio": args.remove_audio,
                },
            )
        except ValidationError as e:
            print("❌ Invalid request:")
            for error in e.errors(include_url=False):
                field = ".".join(str(part) for part in error["loc"])
                print(f"   {field}: {error['msg']}")
            sys.exit(1)
        except ClipExportError as e:
            print(f"❌ Submission failed: {e}")
            sys.exit(1)

        print(f"Job queued: {job.id}")
        if not args.wait:
            return

        final = wait_for_job(store, job.id, config.api.client_poll_interval_s)
    finally:
        store.close()

    if final.status == JobStatus.COMPLETED:
        print(f"✅ Completed: {final.result_key}")
    else:
        print(f"❌ Failed: {final.error}")
        sys.exit(1)


def wait_for_job(store, job_id: str, poll_interval_s: float = 1.0):
    """Poll a job until it is terminal, rendering progress with tqdm."""
    with tqdm(total=100, desc=job_id[:8], unit="%") as bar:
        while True:
            job = store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            bar.set_postfix_str(job.status.value)
            if job.progress > bar.n:
                bar.update(job.progress - bar.n)

            if job.is_terminal:
                return job
            time.sleep(poll_interval_s)


if __name__ == "__main__":
    main()
