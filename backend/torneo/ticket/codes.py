"""
Ticket code generation.

Codes look like ``TKT-7KQ9M2XA``: a prefix plus a random suffix drawn from
an upper-case alphabet without look-alike characters (0/O, 1/I/L).

Uniqueness is checked against an external oracle (usually a repository
lookup). A collision is retryable; generation gives up with
CodeGenerationExhaustedError after ``max_attempts`` tries.
"""

import logging
import re
import secrets
from typing import Awaitable, Callable, Optional, Set

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from torneo.utils.errors import CodeGenerationExhaustedError

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

ExistsOracle = Callable[[str], Awaitable[bool]]


class CodeCollision(Exception):
    """A candidate code is already taken. Internal retry signal."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class TicketCodeGenerator:
    """Generate ticket codes that are unique against an existence oracle.

    Codes handed out are held in an in-process claim set until ``release``
    is called, so concurrent generations never return the same code even
    before either one is persisted.
    """

    def __init__(
        self,
        exists: ExistsOracle,
        prefix: str = "TKT",
        length: int = 8,
        max_attempts: int = 5,
        suffix_factory: Optional[Callable[[], str]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._exists = exists
        self.prefix = prefix
        self.length = length
        self.max_attempts = max_attempts
        self._suffix_factory = suffix_factory or self._random_suffix
        self._claimed: Set[str] = set()
        self._pattern = re.compile(
            rf"^{re.escape(prefix)}-[{CODE_ALPHABET}]{{{length}}}$"
        )

    def _random_suffix(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.length))

    def is_valid_code(self, code: str) -> bool:
        """Check a code against the generator's format."""
        return bool(code) and self._pattern.match(code) is not None

    @property
    def claimed(self) -> frozenset[str]:
        return frozenset(self._claimed)

    async def generate(self) -> str:
        """Return a fresh code, retrying on collisions.

        Raises:
            CodeGenerationExhaustedError: every attempt collided
        """
        code = ""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(CodeCollision),
                reraise=True,
            ):
                with attempt:
                    code = await self._claim(
                        f"{self.prefix}-{self._suffix_factory()}"
                    )
        except CodeCollision as exc:
            logger.warning(
                "Ticket code generation exhausted after %d attempts (last: %s)",
                self.max_attempts,
                exc.code,
            )
            raise CodeGenerationExhaustedError(self.max_attempts) from exc
        return code

    async def _claim(self, candidate: str) -> str:
        if candidate in self._claimed:
            raise CodeCollision(candidate)
        self._claimed.add(candidate)
        try:
            taken = await self._exists(candidate)
        except BaseException:
            self._claimed.discard(candidate)
            raise
        if taken:
            self._claimed.discard(candidate)
            logger.debug("Ticket code collision: %s", candidate)
            raise CodeCollision(candidate)
        return candidate

    def release(self, code: str) -> None:
        """Drop an in-process claim once the code is persisted or abandoned."""
        self._claimed.discard(code)
