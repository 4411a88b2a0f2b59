"""Chart series resampling: forward fill and time-bucket downsampling."""

from collections.abc import Iterable

from tickersync.models import ChartPoint

MAX_FILL_MINUTES = 60


def _format_time(minute_of_day: int) -> str:
    return f"{minute_of_day // 60:02d}{minute_of_day % 60:02d}00"


def forward_fill(points: Iterable[ChartPoint], max_gap_minutes: int = MAX_FILL_MINUTES) -> list[ChartPoint]:
    """Fill same-date gaps of 2..max_gap_minutes with the previous price.

    Gaps longer than max_gap_minutes and gaps across dates are left alone.
    Input must be sorted by key.
    """
    result: list[ChartPoint] = []
    previous: ChartPoint | None = None
    for point in points:
        if previous is not None and previous.date == point.date:
            gap = point.minute_of_day - previous.minute_of_day
            if 1 < gap <= max_gap_minutes:
                for minute in range(previous.minute_of_day + 1, point.minute_of_day):
                    result.append(ChartPoint(price=previous.price, date=point.date, time=_format_time(minute)))
        result.append(point)
        previous = point
    return result


def downsample(points: Iterable[ChartPoint], bucket_minutes: int = 10) -> list[ChartPoint]:
    """Forward-fill, then keep the last point of each time bucket.

    Buckets are aligned to the start of the day, so with 10-minute buckets
    09:00-09:09 form one bucket and 09:10-09:19 the next.
    """
    buckets: dict[tuple[str, int], ChartPoint] = {}
    for point in forward_fill(points):
        buckets[(point.date, point.minute_of_day // bucket_minutes)] = point
    return sorted(buckets.values(), key=lambda p: p.key)
