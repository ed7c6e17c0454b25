"""
Histograms as plain dictionaries of integer bin -> count, plus the immutable
'histogram' objects handed to a metrics file.
"""

import math

import attr
from pyrsistent import pmap


def increment(hist, key, count=1):
    hist[key] = hist.get(key, 0) + count


def total_count(hist):
    return sum(hist.values())


def mean(hist):
    count = total_count(hist)
    if count == 0:
        return 0.0
    return float(sum(k * v for (k, v) in hist.items())) / count


def standard_deviation(hist):
    count = total_count(hist)
    if count < 2:
        return 0.0
    hist_mean = mean(hist)
    squares = sum(v * (k - hist_mean) ** 2 for (k, v) in hist.items())
    return math.sqrt(squares / (count - 1))


def median(hist):
    """
    Median bin, averaging the two middle bins for an even count.
    Returns 0 for an empty histogram.
    """
    count = total_count(hist)
    if count == 0:
        return 0.0
    if count % 2 == 0:
        mid_low = count // 2
        mid_high = mid_low + 1
    else:
        mid_low = (count + 1) // 2
        mid_high = mid_low
    running = 0
    low_value = None
    high_value = None
    for key in sorted(hist.keys()):
        running += hist[key]
        if low_value == None and running >= mid_low:
            low_value = key
        if high_value == None and running >= mid_high:
            high_value = key
            break
    return (low_value + high_value) / 2.0


def median_absolute_deviation(hist):
    if total_count(hist) == 0:
        return 0.0
    hist_median = median(hist)
    deviations = {}
    for (key, value) in hist.items():
        increment(deviations, abs(key - hist_median), value)
    return median(deviations)


def percentile(hist, fraction):
    """Smallest bin at which the cumulative count reaches 'fraction' of the total"""
    count = total_count(hist)
    if count == 0:
        return 0
    running = 0
    for key in sorted(hist.keys()):
        running += hist[key]
        if float(running) / count >= fraction:
            return key
    return max(hist.keys())


@attr.s(frozen=True)
class histogram(object):
    """A finished, named histogram; bins are immutable"""

    bin_label = attr.ib()
    value_label = attr.ib()
    bins = attr.ib(converter=pmap)

    def is_empty(self):
        return len(self.bins) == 0

    def to_dict(self):
        return {
            'bin label': self.bin_label,
            'value label': self.value_label,
            'bins': {k: self.bins[k] for k in sorted(self.bins.keys())}
        }
