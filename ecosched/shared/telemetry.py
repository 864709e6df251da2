"""
ecosched/shared/telemetry.py
────────────────────────────
ResponseProfile: a rolling statistical summary of how one machine responds.

Why this is a separate file from models.py
------------------------------------------
models.py describes the *instantaneous* state of the cluster (a machine
right now, a task right now). telemetry.py holds what the scheduler has
*learned over time*.

  models.py    → "What is happening right now?"
  telemetry.py → "How has this machine behaved lately?"

How ResponseProfile gets populated
----------------------------------
1. A task completes. The scheduler knows when it arrived and where it ran.
2. The response time (completion − arrival) becomes one ResponseSample on
   that machine's profile.
3. The predictive policy reads the profile (the rolling mean or the
   ResponseTimePredictor forecast, scaled by burst_factor) to rank machines
   for new tasks.
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

MAX_SAMPLES: int = 500
"""Raw samples kept per profile. Older samples are dropped FIFO."""

MIN_SAMPLES_FOR_FORECAST: int = 10
"""Samples needed before the LSTM path is attempted."""


class ResponseSample(BaseModel):
    """
    One completed task as seen from the machine that ran it.

    Fields:
        time          → Simulated completion time (seconds).
        response_time → Completion time minus arrival time (seconds).
    """
    time: float = Field(..., ge=0)
    response_time: float = Field(..., ge=0)


class ResponseProfile(BaseModel):
    """
    Rolling response-time statistics for one machine.

    Statistics are recomputed from the retained window on every sample so
    that dropping old samples automatically moves the averages.
    """
    machine_id: int = Field(..., ge=0)
    sample_count: int = Field(0, ge=0, description="Samples ever added")
    max_samples: int = Field(MAX_SAMPLES, ge=1)
    samples: List[ResponseSample] = Field(default_factory=list)

    avg_response_time: float = Field(0.0, ge=0)
    burst_factor: float = Field(1.0, ge=1.0, description="max / mean response time")

    def add_sample(self, sample: ResponseSample) -> None:
        """Append a sample, trim to the window and recompute statistics."""
        self.samples.append(sample)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]
        self.sample_count += 1

        n = len(self.samples)
        rt_values = [s.response_time for s in self.samples]
        self.avg_response_time = sum(rt_values) / n

        if self.avg_response_time > 0:
            self.burst_factor = max(max(rt_values) / self.avg_response_time, 1.0)
        else:
            self.burst_factor = 1.0

    @property
    def response_history(self) -> List[float]:
        """Response times, oldest first."""
        return [s.response_time for s in self.samples]

    @property
    def has_enough_data(self) -> bool:
        return len(self.samples) >= MIN_SAMPLES_FOR_FORECAST


class ResponseForecast(BaseModel):
    """
    Output of ResponseTimePredictor.predict().

    confidence follows the same scale as the cold-start rule: 0.1 means
    "rolling mean only, no model", 0.5–1.0 grows with history length.
    """
    machine_id: int = Field(..., ge=0)
    predicted_response_time: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
