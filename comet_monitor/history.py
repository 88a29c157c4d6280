import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Optional

DEFAULT_HISTORY_SIZE = 50


@dataclass(frozen=True)
class ConsensusParticipationSample:
    height: Optional[int]
    round: Optional[int]
    step: Optional[str]
    prevote_ratio: Optional[float]
    precommit_ratio: Optional[float]
    timestamp: str = field(default="", compare=False)


@dataclass(frozen=True)
class BlockIntervalSample:
    height: Optional[int]
    block_interval_ms: Optional[float]
    timestamp: str = field(default="", compare=False)


@dataclass(frozen=True)
class MempoolDepthSample:
    pending_txs: Optional[int]
    total_bytes: Optional[int]
    timestamp: str = field(default="", compare=False)


@dataclass(frozen=True)
class PeerCountSample:
    total_peers: Optional[int]
    inbound_peers: int
    outbound_peers: int
    timestamp: str = field(default="", compare=False)


class SampleHistory:
    """
    Fixed-capacity FIFO of samples for charting.
    A sample equal to the last retained one (ignoring its timestamp) is dropped.
    """

    def __init__(self, maxlen: int = DEFAULT_HISTORY_SIZE):
        if maxlen <= 0:
            raise ValueError("history size must be positive")
        self._samples = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    @property
    def maxlen(self) -> int:
        return self._samples.maxlen

    def append(self, sample) -> bool:
        with self._lock:
            if self._samples and self._samples[-1] == sample:
                return False
            self._samples.append(sample)
            return True

    def last(self):
        with self._lock:
            return self._samples[-1] if self._samples else None

    def samples(self) -> list:
        with self._lock:
            return list(self._samples)

    def clear(self):
        with self._lock:
            self._samples.clear()

    def to_list(self) -> list:
        return [asdict(sample) for sample in self.samples()]

    def __len__(self):
        with self._lock:
            return len(self._samples)


def block_interval_sample(previous_height, previous_time, status, timestamp: str) -> Optional[BlockIntervalSample]:
    """Average time per block since the previously recorded status, in ms."""
    if status is None or status.height is None or status.block_time is None:
        return None
    interval = None
    if previous_height is not None and previous_time is not None and status.height > previous_height:
        elapsed_ms = (status.block_time - previous_time).total_seconds() * 1000
        interval = elapsed_ms / (status.height - previous_height)
    return BlockIntervalSample(height=status.height, block_interval_ms=interval, timestamp=timestamp)
