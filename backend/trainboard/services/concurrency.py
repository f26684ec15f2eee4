from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from trainboard import db
from trainboard.errors import ConcurrentUpdateError


def run_with_retry(operation, label, attempts=None):
    """Run a read-modify-write unit and commit it.

    ``operation`` must re-read whatever it modifies; participant rows carry a
    version counter, so a write based on a stale read fails with
    StaleDataError. The transaction is then rolled back and the whole unit
    runs again, up to LEDGER_MAX_RETRIES times.
    """
    if attempts is None:
        attempts = int(current_app.config.get('LEDGER_MAX_RETRIES', 5))
    for attempt in range(1, max(1, attempts) + 1):
        try:
            result = operation()
            db.session.commit()
            return result
        except StaleDataError:
            db.session.rollback()
            current_app.logger.warning(f"[retry] {label} attempt={attempt} lost a concurrent write, retrying")
        except Exception:
            db.session.rollback()
            raise
    current_app.logger.error(f"[retry] {label} gave up after {attempts} attempts")
    raise ConcurrentUpdateError()
