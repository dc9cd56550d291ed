import logging

from tortoise import Tortoise, connections

from config.settings import DATABASE_URL

logger = logging.getLogger(__name__)

TORTOISE_ORM = {
    'connections': {'default': DATABASE_URL},
    'apps': {
        'models': {
            'models': ['apps.videos.models'],
            'default_connection': 'default',
        },
    },
}


async def init_db(db_url: str | None = None, generate_schemas: bool = True) -> None:
    """Open the Tortoise connections and create missing tables."""
    config = TORTOISE_ORM
    if db_url:
        config = {**TORTOISE_ORM, 'connections': {'default': db_url}}
    await Tortoise.init(config=config)
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
    logger.info('Database initialised')


async def close_db() -> None:
    await connections.close_all()
    logger.info('Database connections closed')


async def check_db() -> str | None:
    """Returns the error text when the database does not answer, None when healthy."""
    try:
        conn = connections.get('default')
        await conn.execute_query('SELECT 1')
    except Exception as e:
        logger.exception('Database health check failed')
        return str(e) or e.__class__.__name__
    return None
