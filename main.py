import argparse
import asyncio
import json

from crawl_orchestrator.config import Settings
from crawl_orchestrator.monitoring.metrics_server import run_metrics_server
from crawl_orchestrator.orchestration.facade import OrchestrationFacade
from crawl_orchestrator.runtime import run_services, with_facade


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main() -> None:
    parser = argparse.ArgumentParser(description="Crawl orchestrator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Create a crawl job")
    start.add_argument("url")
    start.add_argument("--depth", type=int, default=None)
    start.add_argument("--domain", action="append", dest="domains", default=None)
    start.add_argument("--owner", default=None)
    start.add_argument("--priority", type=int, default=0)

    stop = sub.add_parser("stop", help="Stop a crawl job")
    stop.add_argument("job_id")

    status = sub.add_parser("status", help="Show a crawl job")
    status.add_argument("job_id")

    sub.add_parser("clear-queue", help="Drop all non-active tasks")
    sub.add_parser("reset", help="Cancel all crawls and wipe queue state")
    sub.add_parser("stats", help="Show queue statistics")
    for name, help_text in (
        ("worker", "Run the worker pool"),
        ("scheduler", "Run the crawl scheduler"),
        ("run", "Run the worker pool and the scheduler"),
    ):
        service = sub.add_parser(name, help=help_text)
        service.add_argument(
            "--metrics", action="store_true", help="Expose Prometheus metrics"
        )
    sub.add_parser("serve", help="Run the HTTP API")
    sub.add_parser("metrics", help="Run Prometheus metrics server")

    args = parser.parse_args()

    if args.command == "start":
        job_id = asyncio.run(
            with_facade(
                OrchestrationFacade.start_crawl,
                args.url,
                args.depth,
                args.domains,
                owner_id=args.owner,
                priority=args.priority,
            )
        )
        _print({"job_id": job_id})
        return
    if args.command == "stop":
        job = asyncio.run(with_facade(OrchestrationFacade.stop_crawl, args.job_id))
        _print(job.to_dict())
        return
    if args.command == "status":
        _print(asyncio.run(with_facade(OrchestrationFacade.get_status, args.job_id)))
        return
    if args.command == "clear-queue":
        removed = asyncio.run(with_facade(OrchestrationFacade.clear_queue))
        _print({"removed": removed})
        return
    if args.command == "reset":
        _print(asyncio.run(with_facade(OrchestrationFacade.reset_all)))
        return
    if args.command == "stats":
        _print(asyncio.run(with_facade(OrchestrationFacade.queue_stats)))
        return
    if args.command == "worker":
        asyncio.run(run_services(scheduler=False, metrics=args.metrics))
        return
    if args.command == "scheduler":
        asyncio.run(run_services(workers=False, metrics=args.metrics))
        return
    if args.command == "run":
        asyncio.run(run_services(metrics=args.metrics))
        return
    if args.command == "serve":
        import uvicorn

        uvicorn.run("api.crawl:app", host="0.0.0.0", port=Settings.api_port)
        return
    if args.command == "metrics":
        run_metrics_server()
        return


if __name__ == "__main__":
    main()
