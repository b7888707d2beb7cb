#!/usr/bin/env python3
"""
Dispatch simulation on a simulated clock - no database, no chat gateway

Runs the engine with the in-memory store and the logging notifier, walks a
few rides through offers, timeouts, a short wallet and commission
settlement, then prints the event trail and every driver's wallet.

Usage (from the project root):
    python scripts/run_dispatch_simulation.py

Or with JSON logs / only some rides:
    python scripts/run_dispatch_simulation.py --json-logs --only funds,timeout

Rides available:
    funds, timeout, lifecycle
"""
import sys
import asyncio
import argparse
from pathlib import Path

# add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fleet_dispatch.core.clock import ManualClock  # noqa: E402
from fleet_dispatch.core.config import settings  # noqa: E402
from fleet_dispatch.core.exceptions import AppException  # noqa: E402
from fleet_dispatch.core.logging import setup_logging  # noqa: E402
from fleet_dispatch.db.repository import InMemoryRepository  # noqa: E402
from fleet_dispatch.domain.events import DispatchEvent  # noqa: E402
from fleet_dispatch.domain.models import Location, PriorityTier, Vehicle  # noqa: E402
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine  # noqa: E402
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy  # noqa: E402
from fleet_dispatch.domain.services.estimator import StraightLineEstimator  # noqa: E402
from fleet_dispatch.domain.services.notifier import LoggingNotifier  # noqa: E402
from fleet_dispatch.domain.services.provider_factory import default_plan_catalog  # noqa: E402

RIDES = ("funds", "timeout", "lifecycle")

STATION = Location(22.6394, 120.3025, "高雄車站")


class Colors:
    """Terminal colours"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def print_header(title: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}")
    print(f" {title}")
    print(f"{'='*60}{Colors.RESET}\n")


def print_section(title: str) -> None:
    print(f"\n{Colors.BOLD}▶ {title}{Colors.RESET}")


def print_step(text: str, ok: bool = True) -> None:
    colour = Colors.GREEN if ok else Colors.YELLOW
    print(f"  {colour}•{Colors.RESET} {text}")


class Simulation:
    def __init__(self):
        self.clock = ManualClock()
        self.events: list[DispatchEvent] = []
        self.engine = DispatchEngine(
            repository=InMemoryRepository(),
            notifier=LoggingNotifier(utc_offset_hours=settings.LOCAL_UTC_OFFSET_HOURS),
            estimator=StraightLineEstimator(),
            plans=default_plan_catalog(settings),
            policy=DispatchPolicy.from_settings(settings),
            clock=self.clock,
        )
        self.engine.events.subscribe(self.events.append)
        self.drivers: dict[str, Vehicle] = {}

    async def add_driver(self, name: str, km_north: float, priority: PriorityTier, balance: int) -> Vehicle:
        vehicle = Vehicle.new(
            driver_name=name,
            driver_phone="0900000000",
            plate_number=f"SIM-{len(self.drivers) + 1:04d}",
            lat=STATION.lat + km_north / 111.0,
            lng=STATION.lng,
            priority=priority,
        )
        vehicle = await self.engine.register_vehicle(vehicle, opening_balance=balance)
        self.drivers[name] = vehicle
        return vehicle

    async def wait(self, seconds: float) -> None:
        self.clock.advance(seconds)
        await self.engine.settle()

    async def reply(self, name: str, text: str) -> None:
        outcome = await self.engine.submit_reply(self.drivers[name].id, text)
        detail = f" (${outcome.balance} / ${outcome.required})" if outcome.required is not None else ""
        print_step(f"{name} replied: {outcome.status.value} {outcome.message}{detail}", outcome.accepted)

    async def ride_funds(self) -> None:
        print_section("A short wallet is turned away")
        order = await self.engine.create_order(pickup=STATION, destination="前鎮區", price=450)
        await self.engine.dispatch(order.id)
        current = await self.engine.get_order(order.id)
        print_step(f"{order.reference} ${order.price} offered to {self._name(current.offered_vehicle_id)}")
        await self.reply("林司機", f"接 {order.reference}")
        current = await self.engine.get_order(order.id)
        print_step(f"offer moved to {self._name(current.offered_vehicle_id)}")
        await self.reply("張司機", order.reference)
        await self._finish(order.id)

    async def ride_timeout(self) -> None:
        print_section("Offers lapse one driver at a time")
        order = await self.engine.create_order(pickup=STATION, destination="左營區", price=300)
        await self.engine.dispatch(order.id)
        while True:
            current = await self.engine.get_order(order.id)
            if current.offered_vehicle_id is None:
                break
            print_step(f"offered to {self._name(current.offered_vehicle_id)}, no reply", ok=False)
            await self.wait(self.engine.policy.offer_window_seconds)
        current = await self.engine.get_order(order.id)
        print_step(f"{current.reference} is {current.status.value}, manual dispatch: {current.needs_manual_dispatch}")
        await self.engine.cancel(order.id, reason="simulation")

    async def ride_lifecycle(self) -> None:
        print_section("Booking to completion with waiting time")
        order = await self.engine.create_order(pickup="高雄市三民區建國二路", destination="小港區")
        print_step(f"{order.reference} quoted ${order.price} for {order.distance_km} km")
        await self.engine.dispatch(order.id)
        await self.wait(6)
        current = await self.engine.get_order(order.id)
        while current.offered_vehicle_id is not None:
            await self.reply(self._name(current.offered_vehicle_id), f"{order.reference} 收到")
            current = await self.engine.get_order(order.id)
        await self.engine.begin_pickup(order.id)
        await self.engine.arrived(order.id)
        await self.wait(8 * 60)
        print_step(f"waiting fee so far ${await self.engine.waiting_fee(order.id)}")
        await self._finish(order.id)

    async def _finish(self, order_id: str) -> None:
        started = await self.engine.start_trip(order_id)
        print_step(f"trip priced ${started.price} (waiting ${started.waiting_fee})")
        await self.wait(15 * 60)
        done = await self.engine.complete(order_id)
        settled = "settled" if done.commission_settled else "UNSETTLED"
        print_step(f"completed, commission ${done.commission} {settled}", bool(done.commission_settled))

    def _name(self, driver_id: str | None) -> str:
        for name, vehicle in self.drivers.items():
            if vehicle.id == driver_id:
                return name
        return "-"

    async def report(self) -> None:
        print_header("Event trail")
        for event in self.events:
            stamp = event.occurred_at.strftime("%H:%M:%S")
            who = f" {self._name(event.vehicle_id)}" if event.vehicle_id else ""
            print(f"  {stamp} {event.type.value:<22}{who} {event.data or ''}")

        print_header("Wallets")
        for name, vehicle in self.drivers.items():
            current = await self.engine.get_vehicle(vehicle.id)
            reconciliation = await self.engine.reconcile(vehicle.id)
            flag = f"{Colors.RED} delinquent{Colors.RESET}" if current.delinquent else ""
            print(
                f"  {name:<6} ${current.wallet_balance:>6}  misses={current.missed_count}"
                f"  ledger={'ok' if reconciliation.consistent else 'MISMATCH'}{flag}"
            )
            for entry in reversed(await self.engine.wallet_history(vehicle.id)):
                print(f"         {entry.entry_type.value:<10} {entry.amount:>+6} -> {entry.balance_after}")


async def main(rides: list[str]) -> int:
    simulation = Simulation()
    await simulation.add_driver("夥伴司機", 0.5, PriorityTier.PARTNER, 300)
    await simulation.add_driver("林司機", 1.0, PriorityTier.INTERNAL, 50)
    await simulation.add_driver("張司機", 3.0, PriorityTier.INTERNAL, 500)

    print_header(f"Dispatch simulation from {simulation.clock.now().isoformat()}")
    try:
        for ride in rides:
            await getattr(simulation, f"ride_{ride}")()
    except AppException as e:
        print(f"\n{Colors.RED}{e.error_code.value}: {e.message} {e.details}{Colors.RESET}")
        return 1
    finally:
        await simulation.report()
        await simulation.engine.shutdown()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a dispatch simulation on a simulated clock")
    parser.add_argument("--only", help="Comma separated rides: " + ", ".join(RIDES))
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    selected = [ride.strip() for ride in args.only.split(",")] if args.only else list(RIDES)
    unknown = [ride for ride in selected if ride not in RIDES]
    if unknown:
        parser.error(f"unknown rides: {', '.join(unknown)}")

    setup_logging(
        level="DEBUG" if args.verbose else "WARNING",
        json_format=args.json_logs,
        app_name="dispatch-simulation",
    )
    sys.exit(asyncio.run(main(selected)))
