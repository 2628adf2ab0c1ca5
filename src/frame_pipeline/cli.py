import argparse
import sys
import time

from tqdm import tqdm

from .config import configure_logging, resolve_config
from .ffmpeg_runner import check_ffmpeg
from .job_service import JobService
from .queue.models import Job, JobStatus
from .queue.worker import JobScheduler


def _print_job(job: Job) -> None:
    print("\n" + "=" * 60)
    print(f"JOB {job.id}")
    print("=" * 60)
    print(f"Status:               {job.status.value}")
    print(f"Progress:             {job.progress}%")
    print(f"Input:                {job.input_ref}")
    print(f"Created:              {job.created_at.isoformat()}")
    if job.started_at:
        print(f"Started:              {job.started_at.isoformat()}")
    if job.completed_at:
        print(f"Finished:             {job.completed_at.isoformat()}")
    if job.output_ref:
        print(f"Output:               {job.output_ref} ({job.frame_count} frames)")
    if job.error:
        print(f"Error:                {job.error}")
    print("=" * 60)


def _watch(service: JobService, job_id: str, interval: float) -> int:
    job = service.get_status(job_id)
    if job is None:
        print(f"Job not found: {job_id}")
        return 1

    with tqdm(total=100, desc=job_id, unit="%") as bar:
        while True:
            bar.set_postfix_str(job.status.value)
            bar.update(max(0, job.progress - bar.n))
            if job.is_terminal:
                break
            time.sleep(interval)
            job = service.get_status(job_id)
            if job is None:
                print(f"Job {job_id} expired while watching")
                return 1

    _print_job(job)
    return 0 if job.status == JobStatus.COMPLETED else 1


def _run_worker(service: JobService, scheduler: JobScheduler, drain: bool) -> None:
    if drain:
        dispatched = scheduler.drain()
        scheduler.stop()
        print(f"Processed {dispatched} job(s)")
        return

    print(
        f"Worker running with {scheduler.pool.max_workers} slot(s), "
        f"store {service.store!r}. Ctrl+C to stop."
    )
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        print("\nStopping worker, waiting for running jobs...")
    finally:
        scheduler.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="frame-pipeline", description="Video frame extraction job pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config file")
    parser.add_argument("--db", type=str, help="Job store database path")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a video for frame extraction")
    submit_parser.add_argument("input_ref", help="Upload file id, file name or absolute path")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id")

    # LIST
    subparsers.add_parser("list", help="List all jobs, newest first")

    # CANCEL
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or processing job")
    cancel_parser.add_argument("job_id")

    # WATCH
    watch_parser = subparsers.add_parser("watch", help="Follow a job's progress until it ends")
    watch_parser.add_argument("job_id")
    watch_parser.add_argument(
        "--interval", type=float, default=1.0, help="Seconds between status polls"
    )

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the job scheduler")
    worker_parser.add_argument("--workers", "-w", type=int, help="Max concurrent jobs")
    worker_parser.add_argument("--poll-interval", type=float, help="Seconds between queue polls")
    worker_parser.add_argument("--uploads-dir", type=str, help="Input directory")
    worker_parser.add_argument("--output-dir", "-o", type=str, help="Archive directory")
    worker_parser.add_argument("--notify-url", type=str, help="Completion notification endpoint")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=args.config)
    configure_logging(config.logging.level)

    if args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg(config.processing.ffmpeg_path):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        return

    with JobService.from_config(config) as service:
        if args.command == "submit":
            job = service.submit(args.input_ref)
            print(f"Submitted job {job.id} ({job.status.value})")

        elif args.command == "status":
            job = service.get_status(args.job_id)
            if job is None:
                print(f"Job not found: {args.job_id}")
                sys.exit(1)
            _print_job(job)

        elif args.command == "list":
            jobs = service.list_jobs()
            if not jobs:
                print("No jobs.")
            for job in jobs:
                print(
                    f"{job.id}  {job.status.value:<10}  {job.progress:>3}%  "
                    f"{job.created_at.isoformat()}  {job.input_ref}"
                )

        elif args.command == "cancel":
            if service.cancel(args.job_id):
                print(f"Cancelled job {args.job_id}")
            else:
                print(f"Job {args.job_id} not found or already finished")
                sys.exit(1)

        elif args.command == "watch":
            code = _watch(service, args.job_id, args.interval)
            if code:
                sys.exit(code)

        elif args.command == "worker":
            scheduler = JobScheduler.from_config(service, config.worker)
            _run_worker(service, scheduler, args.drain)


if __name__ == "__main__":
    main()
