#!/usr/bin/env python3
"""
Run one maintenance job under its distributed lock, then exit.

For crontab-style deployments that do not go through the HTTP trigger:

    */5  * * * *  python scripts/run_job.py webhook-retry
    */10 * * * *  python scripts/run_job.py scheduler-health-check

Exit codes: 0 ran, 3 skipped (another run holds the lock), 1 failed,
2 unknown job type.
"""
import asyncio
import json
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

EXIT_SKIPPED = 3


async def run_job(job_type: str) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from core.container import build_services
    from jobs.runner import UnknownJobError

    services = build_services(load_settings())
    await services.start(run_workers=False)
    try:
        result = await services.runner.acquire_and_run(job_type)
    except UnknownJobError as e:
        print(str(e), file=sys.stderr)
        print(f"Known jobs: {', '.join(services.runner.job_types)}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"{job_type} failed: {e}", file=sys.stderr)
        return 1
    finally:
        await services.stop()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ran else EXIT_SKIPPED


def main():
    parser = argparse.ArgumentParser(description="Run a maintenance job once")
    parser.add_argument("job_type", help="e.g. webhook-retry, scheduler-health-check")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_job(args.job_type)))


if __name__ == "__main__":
    main()
