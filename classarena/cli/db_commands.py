"""
Database CLI Commands

Database operations: init
"""
import asyncio


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        """Execute database command."""
        if args.db_action == "init":
            return self._init(args)
        else:
            print("Error: Unknown database action")
            return 1

    def _init(self, args) -> int:
        """Create every table that does not exist yet."""
        print("=== Database Init ===")
        from classarena.database import engine, init_db, close_db

        if self.dry_run:
            print(f"[DRY RUN] Would create missing tables on {engine.url.render_as_string(hide_password=True)}")
            return 0

        async def run():
            try:
                await init_db()
            finally:
                await close_db()

        try:
            asyncio.run(run())
            print("✓ Tables created")
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1
