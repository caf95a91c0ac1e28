"""Script to inspect and reconcile task statuses by hand."""

import argparse
import asyncio
import sys

sys.path.insert(0, ".")

from songbroker.db.models import ACTIVE_TASK_STATUSES
from songbroker.db.session import async_session_maker
from songbroker.services.factory import get_retry_scheduler, get_status_reconciler
from songbroker.services.generation_store import generation_store
from songbroker.services.task_store import task_store


def print_result(result) -> None:
    if result.deferred:
        print("Provider rate limit reached, try again in a minute.")
        return
    if result.error:
        print(f"Provider error: {result.error.code} ({result.error.user_message})")
    for outcome in result.outcomes.values():
        status = outcome.status.value if outcome.status else "unknown"
        marker = " (updated)" if outcome.mutated else ""
        print(f"  {outcome.provider_task_id}: {status}{marker}")
    print(f"Summary: {result.summary()}")


async def check_task(provider_task_id: str) -> None:
    print(f"Checking task {provider_task_id}...")
    result = await get_status_reconciler().reconcile([provider_task_id])
    print_result(result)


async def check_generation(generation_id: str) -> None:
    async with async_session_maker() as db:
        generation = await generation_store.find_by_generation_id(db, generation_id)
    if generation is None:
        print(f"Generation {generation_id} not found")
        return

    print(f"Generation {generation_id} ({generation.mode.value}): {generation.status.value}")
    result = await get_status_reconciler().reconcile([t.provider_task_id for t in generation.tasks])
    print_result(result)


async def check_pending(batch_size: int) -> None:
    async with async_session_maker() as db:
        pending = await task_store.find_by_status_in(db, ACTIVE_TASK_STATUSES)

    print(f"Found {len(pending)} active tasks")
    reconciler = get_status_reconciler()
    task_ids = [task.provider_task_id for task in pending]
    for start in range(0, len(task_ids), batch_size):
        result = await reconciler.reconcile(task_ids[start : start + batch_size])
        print_result(result)
        if result.deferred:
            break


async def run_sweep() -> None:
    result = await get_retry_scheduler().run_bulk_sweep()
    if result.skipped:
        print(f"Bulk sweep skipped: {result.skip_reason}")
    else:
        print(
            f"Bulk sweep: {result.tasks_found} tasks, {result.batches_run} batches, "
            f"{result.tasks_mutated} updated"
        )


def main():
    parser = argparse.ArgumentParser(description="Check generation task statuses")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--task", help="Provider task id to check")
    group.add_argument("--generation", help="Generation id to check")
    group.add_argument("--pending", action="store_true", help="Check all active tasks")
    group.add_argument("--sweep", action="store_true", help="Run the bulk sweep now")
    parser.add_argument("--batch-size", type=int, default=20)
    args = parser.parse_args()

    if args.task:
        asyncio.run(check_task(args.task))
    elif args.generation:
        asyncio.run(check_generation(args.generation))
    elif args.pending:
        asyncio.run(check_pending(args.batch_size))
    else:
        asyncio.run(run_sweep())


if __name__ == "__main__":
    main()
