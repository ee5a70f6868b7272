"""
Simple benchmark for chunked bulk operations.

Creates a batch of tasks, runs bulk update_status and delete across
several chunks, and reports throughput plus the monitor summary.
"""

import time
from task_engine.config import EngineConfig
from task_engine.service import TaskService

def benchmark_bulk_operations(db_path="test_benchmark.db", task_count=1000, chunk_size=100):
    """Benchmark bulk status updates and deletes."""
    # Clean up any existing database file
    import os
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.remove(db_path + suffix)

    config = EngineConfig(
        database_path=db_path,
        chunk_size=chunk_size,
        max_operations=task_count,
        max_tasks_per_request=task_count,
        memory_limit_mb=4096,
    )
    service = TaskService.from_config(config)

    print("Creating test data...")
    task_ids = [service.create_task({"title": f"Task {i+1}"}, user_id=1).id for i in range(task_count)]
    print(f"Created {len(task_ids)} tasks")

    print("\nBenchmarking bulk update_status...")
    start = time.perf_counter()
    update_result = service.bulk_operation(
        {"action": "update_status", "task_ids": task_ids, "status": "in_progress"}, user_id=1
    )
    update_ms = (time.perf_counter() - start) * 1000

    print("Benchmarking bulk delete with versions...")
    versions = {task_id: 2 for task_id in task_ids}
    start = time.perf_counter()
    delete_result = service.bulk_operation(
        {"action": "delete", "task_ids": task_ids, "versions": versions}, user_id=1
    )
    delete_ms = (time.perf_counter() - start) * 1000

    print(f"\nResults:")
    print(f"  Tasks: {task_count} in chunks of {chunk_size}")
    print(f"  update_status: {update_ms:.2f}ms ({update_result.message})")
    print(f"  delete: {delete_ms:.2f}ms ({delete_result.message})")
    print(f"  Per-task average: {(update_ms + delete_ms) / (2 * task_count):.4f}ms")

    # Verify outcomes
    assert update_result.processed == task_count, f"Expected {task_count} updates, got {update_result.processed}"
    assert delete_result.processed == task_count, f"Expected {task_count} deletes, got {delete_result.processed}"
    assert delete_result.conflicts == 0, f"Unexpected conflicts: {delete_result.conflicts}"

    summary = service.monitor.summary()
    print(f"\nMonitor summary")
    print(f"  Operations recorded: {summary['operations']}")
    print(f"  Average duration: {summary['avg_duration_ms']}ms")
    print(f"  Memory usage: {summary['memory_usage_mb']}MB")

    # Cleanup
    service.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.remove(db_path + suffix)

    print(f"\nBenchmark complete!")
    return (update_ms + delete_ms) / (2 * task_count)

if __name__ == "__main__":
    per_task_ms = benchmark_bulk_operations()

    # Performance threshold check
    threshold_ms = 2  # Should be under 2ms per task for good performance
    if per_task_ms < threshold_ms:
        print(f"\n✓ Performance is good! ({per_task_ms:.4f}ms < {threshold_ms}ms threshold)")
    else:
        print(f"\n⚠ Performance could be improved ({per_task_ms:.4f}ms >= {threshold_ms}ms threshold)")
