"""
End-to-end walkthrough of the dispatch engine on the in-memory store.

This script exercises:
1. Configuration loading and validation
2. A guardian zone and a subject leaving it
3. The case the orchestrator opens for that exit
4. Volunteer matching, acceptance and completion
5. Sink failures that must not break dispatch

Run with: python demo_system.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory.store import InMemoryStore
from adapters.sinks.logging_sinks import LoggingAuditSink, LoggingBroadcaster, LoggingNotifier
from guardian.config import config_summary, get_config
from guardian.domain.models import CaseStatus
from guardian.observability import configure_logging
from guardian.services import DispatchOrchestrator, build_orchestrator

console = Console()

HOME = (24.8138, 120.9675)
SUBJECT = "grandpa-lin"

VOLUNTEERS = [
    ("vol-chen", (24.8150, 120.9680)),
    ("vol-wang", (24.8170, 120.9660)),
    ("vol-huang", (24.8400, 120.9900)),
]


class BrokenNotifier:
    """Push provider that is always down."""

    async def notify(self, target_id: str, alert: object) -> None:
        raise ConnectionError("push gateway unreachable")


async def demo_configuration() -> bool:
    console.print(Panel("Configuration", style="blue"))
    try:
        for section, values in config_summary(get_config()).items():
            table = Table(title=section)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="white")
            for key, value in values.items():
                table.add_row(key, str(value))
            console.print(table)
        return True
    except Exception as e:
        console.print(f"Configuration check failed: {e}", style="red")
        return False


async def demo_exit_to_resolution(orchestrator: DispatchOrchestrator) -> bool:
    """Subject leaves home, a case opens, volunteers are matched and one finds them."""
    console.print(Panel("Geofence exit to resolved case", style="blue"))
    try:
        zone = await orchestrator.monitor.create_zone(
            SUBJECT, "Home", HOME[0], HOME[1], 500, guardian_id="daughter-lin", emergency_contacts=["neighbor-wu"]
        )
        console.print(f"Created zone {zone.name} ({zone.radius:.0f} m) for {SUBJECT}", style="green")

        for volunteer_id, (lat, lng) in VOLUNTEERS:
            await orchestrator.matching.register_volunteer(volunteer_id, {"lat": lat, "lng": lng})
        console.print(f"Registered {len(VOLUNTEERS)} volunteers", style="green")

        await orchestrator.monitor.update_location(SUBJECT, *HOME)
        result = await orchestrator.monitor.update_location(SUBJECT, 24.8237, 120.9675)
        for event in result.events:
            console.print(f"Crossing: {event.type.value} {event.distance:.0f} m from center", style="yellow")
        await orchestrator.drain()

        (case,) = await orchestrator.cases.open_cases_for_subject(SUBJECT)
        console.print(f"Orchestrator opened {case.id} with priority {case.priority.value}", style="green")

        await orchestrator.cases.assign(case.id, "officer-chang", "coordinator")
        await orchestrator.cases.transition(case.id, CaseStatus.DISPATCHED, "coordinator", "search team out")
        await orchestrator.drain()

        candidates = await orchestrator.matching.find_matches(case.id)
        table = Table(title="Match candidates")
        table.add_column("Volunteer", style="cyan")
        table.add_column("Distance (m)", style="magenta")
        table.add_column("Score", style="green")
        for candidate in candidates:
            table.add_row(candidate.volunteer_id, f"{candidate.distance:.0f}", f"{candidate.score:.1f}")
        console.print(table)
        if not candidates:
            console.print("No volunteer in range", style="red")
            return False

        match = await orchestrator.matching.assign_volunteer(case.id, candidates[0].volunteer_id, actor="coordinator")
        await orchestrator.matching.respond_to_assignment(match.id, accepted=True)
        await orchestrator.matching.complete_assignment(match.id, {"found_person": True, "notes": "Near the market"})
        await orchestrator.drain()

        case = await orchestrator.cases.get(case.id)
        console.print(f"Case status: {case.status.value.upper()}", style="green")
        return case.status == CaseStatus.RESOLVED
    except Exception as e:
        console.print(f"Walkthrough failed: {e}", style="red")
        return False


async def demo_sink_failures() -> bool:
    """A dead push provider is logged while the crossing itself still lands."""
    console.print(Panel("Sink failure isolation", style="blue"))
    try:
        orchestrator = build_orchestrator(InMemoryStore(), notifier=BrokenNotifier(), config=get_config())
        await orchestrator.monitor.create_zone(SUBJECT, "Home", HOME[0], HOME[1], 500, guardian_id="daughter-lin")
        await orchestrator.monitor.update_location(SUBJECT, *HOME)
        result = await orchestrator.monitor.update_location(SUBJECT, 24.8237, 120.9675)

        if result.events:
            console.print("Crossing recorded although the notifier failed", style="green")
            return True
        console.print("Crossing was lost", style="red")
        return False
    except Exception as e:
        console.print(f"Sink failure demo failed: {e}", style="red")
        return False


async def run_demo() -> None:
    console.print(Panel("Guardian Dispatch - System Walkthrough", style="bold blue"))
    config = get_config()
    configure_logging(config.logging)

    notifier = LoggingNotifier()
    broadcaster = LoggingBroadcaster()
    audit = LoggingAuditSink()
    orchestrator = build_orchestrator(InMemoryStore(), notifier, broadcaster, audit, config)

    results = [("Configuration", await demo_configuration())]
    async with orchestrator.session(sweep=False):
        results.append(("Exit to resolution", await demo_exit_to_resolution(orchestrator)))
    results.append(("Sink failures", await demo_sink_failures()))

    summary = Table(title="Summary")
    summary.add_column("Step", style="cyan")
    summary.add_column("Result", style="white")
    for name, ok in results:
        summary.add_row(name, "PASSED" if ok else "FAILED")
    summary.add_row("Notifications sent", str(len(notifier.sent)))
    summary.add_row("Broadcasts sent", str(len(broadcaster.sent)))
    summary.add_row("Audit records", str(len(audit.records)))
    console.print(summary)

    stats = await orchestrator.matching.stats()
    console.print(f"Volunteers: {stats['volunteers']}  Matches: {stats['matches']}")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\nStopped by user", style="yellow")
