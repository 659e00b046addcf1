"""
Tournament CLI Commands

Tournament operations: list, replay, sweep-timeouts

sweep-timeouts is the hook for an external timer (cron, systemd timer):
the service itself never schedules anything.
"""
import asyncio
from typing import Optional


class TournamentCommand:
    """Tournament CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        """Execute tournament command."""
        if args.tournament_action == "list":
            return self._run(self._async_list(args.classroom, args.status))
        elif args.tournament_action == "replay":
            return self._run(self._async_replay())
        elif args.tournament_action == "sweep-timeouts":
            return self._run(self._async_sweep())
        else:
            print("Error: Unknown tournament action")
            return 1

    def _run(self, coroutine) -> int:
        try:
            return asyncio.run(coroutine)
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _async_list(self, classroom_id: Optional[int] = None, status: Optional[str] = None) -> int:
        """List tournaments, newest first."""
        from sqlalchemy import select
        from classarena.database import AsyncSessionLocal, close_db
        from classarena.orm.tournament import Tournament, TournamentStatus

        print("=== Tournaments ===")
        try:
            async with AsyncSessionLocal() as session:
                query = select(Tournament).order_by(Tournament.created_at.desc(), Tournament.id.desc())
                if classroom_id is not None:
                    query = query.where(Tournament.classroom_id == classroom_id)
                if status:
                    query = query.where(Tournament.status == TournamentStatus(status))
                tournaments = (await session.execute(query)).scalars().all()
        finally:
            await close_db()

        if not tournaments:
            print("No tournaments found")
            return 0

        print(f"\n{'ID':<6} {'Classroom':<10} {'Name':<36} {'Type':<20} {'Status':<12}")
        print("-" * 86)
        for t in tournaments:
            print(f"{t.id:<6} {t.classroom_id:<10} {t.name[:34]:<36} {t.type.value:<20} {t.status.value:<12}")
        return 0

    async def _async_replay(self) -> int:
        """Propagate winners that were committed but never advanced."""
        from sqlalchemy import select
        from classarena.database import AsyncSessionLocal, close_db
        from classarena.orm.tournament import MatchStatus, TournamentMatch
        from classarena.services.tournament_orchestrator import TournamentOrchestrator

        print("=== Propagation Replay ===")
        try:
            async with AsyncSessionLocal() as session:
                if self.dry_run:
                    result = await session.execute(
                        select(TournamentMatch.id, TournamentMatch.tournament_id, TournamentMatch.bracket_position)
                        .where(
                            TournamentMatch.status == MatchStatus.COMPLETED,
                            TournamentMatch.winner_propagated.is_(False),
                            TournamentMatch.next_match_id.isnot(None),
                            TournamentMatch.is_cancelled.is_(False),
                        )
                    )
                    pending = result.all()
                    print(f"[DRY RUN] {len(pending)} matches awaiting propagation")
                    for row in pending:
                        print(f"  - match {row.id} ({row.bracket_position}) of tournament {row.tournament_id}")
                    return 0

                summary = await TournamentOrchestrator(session).replay_pending_propagation()
        finally:
            await close_db()

        print(f"✓ Propagated {summary['propagated']} matches, finalized {summary['finalized']} tournaments")
        return 0

    async def _async_sweep(self) -> int:
        """Time out every open question past its limit."""
        from classarena.database import AsyncSessionLocal, close_db
        from classarena.services.tournament_orchestrator import TournamentOrchestrator

        print("=== Question Timeout Sweep ===")
        if self.dry_run:
            print("[DRY RUN] Would advance every overdue in-progress match")
            return 0

        try:
            async with AsyncSessionLocal() as session:
                advanced = await TournamentOrchestrator(session).matches.expire_overdue()
        finally:
            await close_db()

        print(f"✓ Advanced {len(advanced)} matches")
        for match_id in advanced:
            print(f"  - match {match_id}")
        return 0
