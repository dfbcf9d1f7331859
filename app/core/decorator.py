import logging
from functools import wraps

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrentModification, ServiceError

logger = logging.getLogger(__name__)


class DBException(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def db_exception(func):
    """
    Wrap a service method so that it is applied as one unit: any failure
    rolls the session back, and persistence errors are translated into the
    service error taxonomy.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except ServiceError:
            self.db.rollback()
            raise
        except StaleDataError:
            # optimistic version check lost the race
            self.db.rollback()
            logger.info(f"Concurrent modification detected in {func.__qualname__}")
            raise ConcurrentModification()
        except IntegrityError as e:
            # usually a unique constraint lost to a concurrent writer
            self.db.rollback()
            logger.info(f"Integrity conflict in {func.__qualname__}: {e.orig}")
            raise ConcurrentModification(
                "Duplicate entry: the record already exists or was created concurrently"
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Database error in {func.__qualname__}", exc_info=True)
            raise DBException("Database error occurred", 500)

    return wrapper
