"""Bucketed aggregation of telemetry series."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Tuple

from models.records import Sample


@dataclass
class BucketSummary:
    """Statistics for one series within one time bucket."""

    series: str
    bucket_start: datetime
    sample_count: int = 0
    min_value: float | None = None
    max_value: float | None = None
    mean_value: float | None = None


class Aggregator:
    """Pure aggregation component that can be unit tested in isolation."""

    def aggregate(self, samples: Iterable[Sample], bucket_ms: int) -> List[BucketSummary]:
        """Group samples into ``floor(ts / bucket) * bucket`` buckets.

        Buckets without samples are not emitted, so consumers see gaps rather
        than zeros. Output is ordered by series, then bucket start.
        """
        if bucket_ms <= 0:
            raise ValueError("Bucket size must be positive.")

        totals: Dict[Tuple[str, int], float] = {}
        summaries: Dict[Tuple[str, int], BucketSummary] = {}

        for sample in samples:
            bucket = (sample.timestamp_ms // bucket_ms) * bucket_ms
            key = (sample.series, bucket)
            summary = summaries.get(key)
            if summary is None:
                summary = BucketSummary(
                    series=sample.series,
                    bucket_start=datetime.fromtimestamp(bucket / 1000, tz=timezone.utc),
                )
                summaries[key] = summary
                totals[key] = 0.0

            value = sample.value
            summary.sample_count += 1
            totals[key] += value
            if summary.min_value is None or value < summary.min_value:
                summary.min_value = value
            if summary.max_value is None or value > summary.max_value:
                summary.max_value = value

        for key, summary in summaries.items():
            summary.mean_value = totals[key] / summary.sample_count

        return [summaries[key] for key in sorted(summaries)]
