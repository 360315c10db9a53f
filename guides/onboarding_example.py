"""Example of a durable onboarding workflow backed by SQLite.

Run it, stop it with Ctrl+C while the workflow sleeps, then start the
recovery worker to finish it:

    python guides/onboarding_example.py
    resumable worker run onboarding_example --base-path guides --lifespan 10
"""

import asyncio
import os

from resumable import WorkflowContext, WorkflowEngine, get_storage

os.environ.setdefault("RESUMABLE_DATABASE_URL", "sqlite://onboarding.db")

engine = WorkflowEngine(storage=get_storage())


@engine.workflow("onboarding")
async def onboarding(ctx: WorkflowContext, email: str):
    account_id = await ctx.step("create-account", lambda: f"acct-{email}")
    await ctx.step("send-welcome", lambda: print(f"Welcome mail sent to {email}"))
    await ctx.sleep("trial-period", 5_000)
    await ctx.step("send-follow-up", lambda: print(f"Follow-up sent to {email}"))
    return account_id


async def main():
    workflow_id = await onboarding.start("ada@example.com")
    print(f"Workflow started with id: {workflow_id}")

    state = await engine.wait_for(workflow_id)
    print(f"Status after first attempt: {state.status.value}")

    async with engine:
        while state.status.value not in ("completed", "failed"):
            await asyncio.sleep(1)
            state = await engine.storage.load(workflow_id)
    print(f"Final status: {state.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
