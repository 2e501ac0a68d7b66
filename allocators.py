"""Game code and server port allocation."""

import random
import socket
import string
from typing import Callable, Iterable, Optional, Set

import psutil

import config
from errors import PortUnavailableError
from logger import setup_logger


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)


def generate_letter_code(
    exclude: Iterable[str] = (),
    length: int = 4,
    rng: Optional[random.Random] = None,
) -> str:
    """Generate an uppercase letter code that is not in `exclude`."""
    taken = set(exclude)
    if len(taken) >= 26 ** length:
        raise ValueError(f"All {length}-letter codes are taken")

    choice = (rng or random).choice
    while True:
        code = "".join(choice(string.ascii_uppercase) for _ in range(length))
        if code not in taken:
            return code


def ports_in_use() -> Set[int]:
    """Local ports with a socket bound, according to the OS connection table."""
    return {c.laddr.port for c in psutil.net_connections(kind="inet") if c.laddr}


def can_bind_port(port: int) -> bool:
    """Check if we can actually bind to a port. Catches TIME_WAIT and friends."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("", port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    """
    Picks a random free port in [base, base + span).

    The probe is not a reservation: another process can grab the port between
    allocate() and the server binding it.
    """

    def __init__(
        self,
        base: int = config.SERVER_PORT_BASE,
        span: int = config.SERVER_PORT_SPAN,
        max_attempts: int = config.PORT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
        in_use: Callable[[], Set[int]] = ports_in_use,
        can_bind: Callable[[int], bool] = can_bind_port,
    ) -> None:
        if base < 1024 or base + span - 1 > 65535:
            raise ValueError(f"Invalid port range: {base}-{base + span - 1}")
        self.base = base
        self.span = span
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._in_use = in_use
        self._can_bind = can_bind

    def _occupied(self) -> Set[int]:
        try:
            return self._in_use()
        except psutil.AccessDenied:
            # macOS needs root for the connection table; the bind check still runs.
            logger.debug("Connection table not readable; relying on bind checks only")
            return set()

    def allocate(self) -> int:
        occupied = self._occupied()
        for attempt in range(1, self.max_attempts + 1):
            port = self.base + self._rng.randrange(self.span)
            if port in occupied:
                continue
            if self._can_bind(port):
                logger.debug(f"Allocated port {port} (attempt {attempt})")
                return port
            occupied.add(port)
        raise PortUnavailableError(
            f"No available port found in range {self.base}-{self.base + self.span - 1} "
            f"after {self.max_attempts} attempts"
        )
