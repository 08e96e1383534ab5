"""Research Sidecar

CLI for serving the sidecar API or running a one-shot research query.
"""

import argparse
import asyncio
import sys

from sidecar.agents.orchestrator import create_orchestrator
from sidecar.config import settings
from sidecar.models.events import EventType
from sidecar.services.logger import configure_logging


async def run_research(query: str, depth: str | None = None, adapter_paths: list[str] | None = None) -> int:
    """Run research on the given query and print its lifecycle."""
    print(f"Research query: {query}")
    print("-" * 50)

    if adapter_paths:
        settings.search_adapters = ",".join(adapter_paths)
    orchestrator = create_orchestrator(settings)
    await orchestrator.start()

    async def print_events() -> None:
        async for event in orchestrator.stream_events():
            data = event.data
            if event.event == EventType.TASK_QUEUED:
                print(f"[*] Queued: {data.get('query')}")
            elif event.event == EventType.TASK_STARTED:
                print("[~] Researching...")
            elif event.event == EventType.TASK_FAILED:
                print(f"[!] Attempt {data.get('attempts')} failed: {data.get('error')}")

    printer = asyncio.create_task(print_events())
    await asyncio.sleep(0)
    try:
        task = await orchestrator.request_research(query, depth=depth, wait=True)
    except asyncio.TimeoutError:
        print("\n[!] Research timed out")
        return 1
    finally:
        printer.cancel()
        await orchestrator.stop()

    if task.result is None:
        print(f"\n[!] Error: {task.error or 'Unknown error'}")
        return 1

    result = task.result
    print("\n[*] Research Complete!")
    print(f"   Depth: {task.depth}")
    print(f"   Confidence: {result.confidence:.2f}")
    print(f"   Sources: {len(result.sources)}")
    print(f"\n{'='*50}")
    print("SUMMARY:")
    print(f"{'='*50}")
    print(result.summary)
    for point in result.key_points:
        print(f"  - {point}")
    for source in result.sources[:5]:
        print(f"  [{source.title}] {source.url}")
    return 0


def serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("sidecar.main:app", host=host, port=port, log_level=settings.app_log_level.lower())


def main():
    parser = argparse.ArgumentParser(description="Research Sidecar")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)

    research_parser = subparsers.add_parser("research", help="Run one research query")
    research_parser.add_argument("--query", "-q", required=True, help="Research query")
    research_parser.add_argument("--depth", "-d", choices=["quick", "medium", "deep"])
    research_parser.add_argument(
        "--adapter",
        "-a",
        action="append",
        default=[],
        help="Search adapter factory as module:callable (repeatable)",
    )

    args = parser.parse_args()

    if args.command == "serve":
        serve(args.host, args.port)
        return
    configure_logging(settings)
    sys.exit(asyncio.run(run_research(args.query, args.depth, args.adapter)))


if __name__ == "__main__":
    main()
