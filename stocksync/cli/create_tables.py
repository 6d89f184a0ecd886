# stocksync/cli/create_tables.py
import asyncio

import click

from stocksync.database import create_engine_for, create_tables as create_all_tables, resolve_database_url


@click.command()
@click.option('--database-url', default=None, help='Override DATABASE_URL')
def create_tables(database_url):
    """Create all database tables directly using SQLAlchemy"""

    async def _create_tables():
        engine = create_engine_for(resolve_database_url(database_url))
        try:
            await create_all_tables(engine)
        finally:
            await engine.dispose()
        click.echo("All tables created successfully!")

    asyncio.run(_create_tables())


if __name__ == "__main__":
    create_tables()
