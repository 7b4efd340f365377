"""
Corrective parameters issued by the fairness auditor and read by the online path.
"""

import json
from datetime import datetime

from .db import get_db
from .schema import CorrectiveParameters, NEUTRAL_CORRECTIONS, format_ts, utcnow
from ..util.logging import logger


class CorrectiveParameterStore:
    """Append-only history of corrective parameters; the newest active entry applies."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        self._cached = None

    def write(self, params: CorrectiveParameters) -> CorrectiveParameters:
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO corrective_params (data, created_at) VALUES (?, ?)",
                (json.dumps(params.to_dict()), format_ts(utcnow()))
            )
            conn.commit()

        self._cached = params
        logger.log_operation("corrections.write", "success", params.to_dict())
        return params

    def latest(self) -> CorrectiveParameters:
        """Newest written parameters regardless of expiry."""
        if self._cached is not None:
            return self._cached

        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT data FROM corrective_params ORDER BY seq DESC LIMIT 1"
            ).fetchone()

        self._cached = CorrectiveParameters.from_dict(json.loads(row[0])) if row else NEUTRAL_CORRECTIONS
        return self._cached

    def current(self, now: datetime = None) -> CorrectiveParameters:
        """Parameters in force at `now`; neutral once the latest entry expires."""
        params = self.latest()
        return params if params.is_active(now) else NEUTRAL_CORRECTIONS
