"""Issuing and validating worker and run tokens."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import jwt

from ..config import TokenConfig
from ..errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenAuthority:
    """Signs and verifies the bearer tokens presented by workers.

    Two kinds are issued. A *worker token* identifies a worker process and is
    checked once when the socket connects. A *run token* carries the ``id`` of
    exactly one run and is checked when the worker joins that run's channel.

    Every verification failure raises the same :class:`Unauthorized`, so a
    caller never learns whether the signature, the time window or the run id
    was wrong.
    """

    def __init__(self, config: TokenConfig) -> None:
        self.config = config
        self.algorithm = config.algorithm
        if self.algorithm == "HS256":
            if not config.secret:
                raise ValueError("tokens.secret is required for HS256 signing")
            self._signing_key: Any = config.secret
            self._verification_key: Any = config.secret
        else:
            if not config.private_key_path or not config.public_key_path:
                raise ValueError("RS256 signing requires private and public key paths")
            self._signing_key = Path(config.private_key_path).read_bytes()
            self._verification_key = Path(config.public_key_path).read_bytes()

    # ------------------------------------------------------------------
    def _encode(self, claims: Mapping[str, Any]) -> str:
        return jwt.encode(dict(claims), self._signing_key, algorithm=self.algorithm)

    def _decode(self, token: str, now: Optional[float]) -> Dict[str, Any]:
        """Verify signature first, then the ``nbf``/``exp`` window."""
        if not token or not isinstance(token, str):
            raise Unauthorized()
        try:
            claims = jwt.decode(
                token,
                self._verification_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except jwt.PyJWTError:
            raise Unauthorized() from None

        current = time.time() if now is None else now
        nbf = claims.get("nbf")
        exp = claims.get("exp")
        try:
            if nbf is not None and current < float(nbf):
                raise Unauthorized()
            if exp is not None and current >= float(exp):
                raise Unauthorized()
        except (TypeError, ValueError):
            raise Unauthorized() from None
        return claims

    # ------------------------------------------------------------------
    def generate_worker_token(
        self,
        worker_name: str = "worker",
        ttl_seconds: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        issued = int(time.time() if now is None else now)
        claims: Dict[str, Any] = {
            "iss": self.config.issuer,
            "sub": worker_name,
            "nbf": issued,
        }
        if ttl_seconds is not None:
            claims["exp"] = issued + ttl_seconds
        return self._encode(claims)

    def verify_worker_token(self, token: str, now: Optional[float] = None) -> Dict[str, Any]:
        claims = self._decode(token, now)
        if "id" in claims:
            # run tokens do not authenticate a socket
            raise Unauthorized()
        return claims

    def generate_run_token(
        self,
        run_id: str,
        ttl_seconds: int,
        not_before: Optional[float] = None,
    ) -> str:
        """Sign ``{id, nbf, exp}`` for one run.

        ``ttl_seconds`` is normally the run timeout plus the configured grace
        period, so the token outlives any legitimate execution of the run.
        """
        nbf = int(time.time() if not_before is None else not_before)
        return self._encode(
            {
                "iss": self.config.issuer,
                "id": str(run_id),
                "nbf": nbf,
                "exp": nbf + int(ttl_seconds),
            }
        )

    def verify_run_token(
        self, token: str, run_id: str, now: Optional[float] = None
    ) -> Dict[str, Any]:
        claims = self._decode(token, now)
        if "exp" not in claims or claims.get("id") != str(run_id):
            raise Unauthorized()
        return claims

    def run_token_ttl(self, run_timeout_ms: int) -> int:
        return int(run_timeout_ms // 1000) + self.config.run_token_grace_seconds
