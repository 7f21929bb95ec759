import math

import numpy as np

from model_config import InvalidConfiguration


def _read_only(values):
    view = values.view()
    view.flags.writeable = False
    return view


class TailStat:
    """Running statistics for one quantity, plus its k smallest and k largest values.

    The smoothed extremes are the means of the tail sets. Both tail buffers
    are kept sorted ascending and hold at most `size` values.
    """

    def __init__(self, size):
        if size < 1:
            raise InvalidConfiguration(
                f"the size to be used for the extreme value sets must be >= 1 (is {size})"
            )
        self.size = int(size)
        self.count = 0
        self.sum = 0.0
        self.sum_sq = 0.0
        self._mins = np.empty(0, dtype=np.float64)
        self._maxs = np.empty(0, dtype=np.float64)

    def __repr__(self):
        return (
            f"TailStat(size={self.size}, count={self.count}, sum={self.sum!r}, "
            f"mins={self._mins.tolist()!r}, maxs={self._maxs.tolist()!r})"
        )

    @property
    def mins(self):
        return _read_only(self._mins)

    @property
    def maxs(self):
        return _read_only(self._maxs)

    def add(self, value):
        value = float(value)
        self.count += 1
        self.sum += value
        self.sum_sq += value * value

        if self.count <= self.size:
            self._mins = np.sort(np.append(self._mins, value))
            self._maxs = np.sort(np.append(self._maxs, value))
            return

        if value < self._mins[-1]:
            idx = np.searchsorted(self._mins, value, side="right")
            self._mins = np.insert(self._mins, idx, value)[:-1]
        if value > self._maxs[0]:
            idx = np.searchsorted(self._maxs, value, side="left")
            self._maxs = np.insert(self._maxs, idx, value)[1:]

    def add_many(self, values):
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.size == 0:
            return

        self.count += int(values.size)
        self.sum += float(values.sum())
        self.sum_sq += float(np.dot(values, values))

        low = values
        high = values
        if values.size > self.size:
            low = np.partition(values, self.size - 1)[: self.size]
            high = np.partition(values, values.size - self.size)[-self.size :]
        self._mins = np.sort(np.concatenate((self._mins, low)))[: self.size]
        self._maxs = np.sort(np.concatenate((self._maxs, high)))[-self.size :]

    def merge(self, other):
        self.count += other.count
        self.sum += other.sum
        self.sum_sq += other.sum_sq
        self._mins = np.sort(np.concatenate((self._mins, other._mins)))[: self.size]
        self._maxs = np.sort(np.concatenate((self._maxs, other._maxs)))[-self.size :]

    def mean(self):
        if self.count == 0:
            return 0.0
        return self.sum / self.count

    def summary(self):
        """Return (smoothed min, mean, standard deviation, smoothed max, count)."""
        if self.count == 0:
            return 0.0, 0.0, 0.0, 0.0, 0

        mean = self.sum / self.count
        sd = 0.0
        if self.count > 1:
            sd = math.sqrt(max(0.0, self.sum_sq / (self.count - 1) - mean * mean))
        return float(np.mean(self._mins)), mean, sd, float(np.mean(self._maxs)), self.count
