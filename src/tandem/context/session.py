from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import scoped_session, sessionmaker

from tandem.context.core import StoppableService


from typing import Any


SERIALIZABLE = 'SERIALIZABLE'


class SessionProvider(StoppableService):
    """Global session utility. It provides a SERIALIZABLE session to tandem.
    If you want to override this provider, be sure to set the isolation_level
    to SERIALIZABLE as well.

    The booking engine delegates all coordination between concurrent callers
    to the store, so it assumes and tests against SERIALIZABLE connections!

    Sessions are scoped to the current thread.

    """

    def __init__(
        self,
        dsn: str,
        engine_config: dict[str, Any] | None = None,
        session_config: dict[str, Any] | None = None
    ):
        assert dsn, 'No dsn configured, set settings.dsn on the context'

        if self.is_postgres(dsn):
            self.assert_valid_postgres_version(dsn)

        self.dsn = dsn

        self.engine = create_engine(
            dsn,
            isolation_level=SERIALIZABLE,
            **(engine_config or self.default_engine_config(dsn))
        )

        self.session = scoped_session(sessionmaker(
            bind=self.engine, **(session_config or {})
        ))

    @staticmethod
    def is_postgres(dsn: str) -> bool:
        return make_url(dsn).get_backend_name() == 'postgresql'

    def default_engine_config(self, dsn: str) -> dict[str, Any]:
        if self.is_postgres(dsn):
            return {'pool_size': 5, 'max_overflow': 5}

        return {}

    def stop_service(self) -> None:
        """ Called by the tandem context when the session provider is being
        discarded (only in testing).

        This makes sure that replacing the session provider on the context
        doesn't leave behind any idle connections.

        """

        self.session.remove()
        self.engine.dispose()

    def get_postgres_version(self, dsn: str) -> tuple[str, int]:
        """ Returns the postgres version as a tuple (string, integer).

        Uses its own connection to be independent from any session.

        """
        assert self.is_postgres(dsn), 'Not a postgres database'

        query = text("""
            SELECT current_setting('server_version'),
                   current_setting('server_version_num')
        """)

        engine = create_engine(dsn)

        try:
            with engine.connect() as connection:
                result = connection.execute(query).first()
            assert result is not None
            version, number = result
            return version, int(number)
        finally:
            engine.dispose()

    def assert_valid_postgres_version(self, dsn: str) -> str:
        v, n = self.get_postgres_version(dsn)

        # partial unique indexes and SERIALIZABLE snapshot isolation
        if n < 90100:
            raise RuntimeError(f'PostgreSQL 9.1+ is required, got {v}')

        return dsn
