"""
ecosched/control_plane/predictor.py
───────────────────────────────────
ResponseTimePredictor: LSTM forecaster of one machine's next response time.

What this is
─────────────
The predictive policy ranks machines by "how long will the next task I put
here take to come back?". The rolling mean from ResponseProfile answers
that for a steady machine. The LSTM catches trends the mean lags behind:
a machine whose response times have been climbing for the last ten
completions is a worse bet than its average says.

Architecture
─────────────
  Input:   (batch, LOOKBACK=10, 1)   — last 10 response times (z-scored)
                ↓
  LSTM:    hidden_size=32, num_layers=1, batch_first=True
                ↓
  Linear:  32 → 1
                ↓
  Output:  scalar → denormalise → clamp at 0 seconds

Training
─────────
Full batch, Adam, MSE, TRAIN_EPOCHS steps over sliding windows of the
profile's history. Weight initialisation draws from torch's global RNG, so
fit() forks the RNG and seeds it from the predictor's seed: identical
histories give identical weights and the caller's RNG is left untouched.

Cold-start
───────────
Fewer than LOOKBACK + 1 samples → no windows to train on. predict() then
returns the profile's rolling mean with confidence 0.1.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np
import torch
import torch.nn as nn
from torch.optim import Adam

from ecosched.shared.config import PREDICTOR_SEED
from ecosched.shared.telemetry import MAX_SAMPLES, ResponseForecast, ResponseProfile

# ── Hyperparameters ────────────────────────────────────────────────────────────

LOOKBACK: int = 10
"""Past response times per input sequence. Equals MIN_SAMPLES_FOR_FORECAST."""

HIDDEN_SIZE: int = 32
"""LSTM hidden state dimension."""

NUM_LAYERS: int = 1

TRAIN_EPOCHS: int = 50
"""Full-batch gradient steps per fit()."""

LEARNING_RATE: float = 0.01

REFIT_THRESHOLD: int = 10
"""New samples needed before refit_if_needed() trains again."""

COLD_START_CONFIDENCE: float = 0.1


class _LSTMModel(nn.Module):
    """Single-layer LSTM with a linear readout on the last timestep."""

    def __init__(self) -> None:
        super().__init__()
        self.lstm = nn.LSTM(
            input_size=1,
            hidden_size=HIDDEN_SIZE,
            num_layers=NUM_LAYERS,
            batch_first=True,
        )
        self.linear = nn.Linear(HIDDEN_SIZE, 1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out, _ = self.lstm(x)
        return self.linear(out[:, -1, :])


class ResponseTimePredictor:
    """
    LSTM response-time forecaster for a single machine.

    Lifecycle:
        predictor = ResponseTimePredictor(machine_id=3)
        predictor.refit_if_needed(profile)     # after each new sample
        forecast = predictor.predict(profile)  # cold-start safe

    Attributes:
        machine_id : which machine this predictor serves
        seed       : torch seed used for weight initialisation
    """

    def __init__(self, machine_id: int, seed: int = PREDICTOR_SEED) -> None:
        if machine_id < 0:
            raise ValueError("ResponseTimePredictor requires a non-negative machine_id.")
        self.machine_id = machine_id
        self.seed = seed

        self._model: Optional[_LSTMModel] = None
        self._trained = False
        self._mean = 0.0
        self._std = 1.0
        self._last_fit_sample_count = 0

    @property
    def is_trained(self) -> bool:
        return self._trained

    @property
    def mean(self) -> float:
        """Normalisation mean from the last fit(). 0.0 if untrained."""
        return self._mean

    @property
    def std(self) -> float:
        """Normalisation std from the last fit(). 1.0 if untrained."""
        return self._std

    # ── Core methods ──────────────────────────────────────────────────────────

    def fit(self, profile: ResponseProfile) -> None:
        """
        Train from scratch on the profile's response-time history.

        Leaves the predictor untrained if there are not at least
        LOOKBACK + 1 samples (zero training windows otherwise).
        """
        history: List[float] = profile.response_history
        n = len(history)
        if not profile.has_enough_data or n <= LOOKBACK:
            self._trained = False
            return

        arr = np.array(history, dtype=np.float64)
        mean = float(arr.mean())
        std = float(max(arr.std(), 1e-6))
        z = (arr - mean) / std

        X_np = np.lib.stride_tricks.sliding_window_view(z[:-1], LOOKBACK)
        y_np = z[LOOKBACK:]
        X_tensor = torch.tensor(X_np, dtype=torch.float32).unsqueeze(-1)
        y_tensor = torch.tensor(y_np, dtype=torch.float32).unsqueeze(-1)

        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(self.seed)
            model = _LSTMModel()
            model.train()
            optimiser = Adam(model.parameters(), lr=LEARNING_RATE)
            loss_fn = nn.MSELoss()
            for _ in range(TRAIN_EPOCHS):
                optimiser.zero_grad()
                loss = loss_fn(model(X_tensor), y_tensor)
                loss.backward()
                optimiser.step()

        model.eval()
        self._model = model
        self._mean = mean
        self._std = std
        self._last_fit_sample_count = profile.sample_count
        self._trained = True

    def predict(self, profile: ResponseProfile) -> ResponseForecast:
        """Forecast the next response time. Never raises."""
        if not self._trained or not profile.has_enough_data:
            return ResponseForecast(
                machine_id=self.machine_id,
                predicted_response_time=profile.avg_response_time,
                confidence=COLD_START_CONFIDENCE,
            )

        last_seq = profile.response_history[-LOOKBACK:]
        z_seq = [(x - self._mean) / self._std for x in last_seq]
        x = torch.tensor(z_seq, dtype=torch.float32).unsqueeze(0).unsqueeze(-1)

        assert self._model is not None
        with torch.no_grad():
            raw = self._model(x)
        predicted = float(raw.squeeze()) * self._std + self._mean

        return ResponseForecast(
            machine_id=self.machine_id,
            predicted_response_time=max(predicted, 0.0),
            confidence=self._compute_confidence(len(profile.samples)),
        )

    def refit_if_needed(self, profile: ResponseProfile) -> bool:
        """Refit once REFIT_THRESHOLD samples arrived since the last fit."""
        if profile.sample_count - self._last_fit_sample_count >= REFIT_THRESHOLD:
            self.fit(profile)
            return self._trained
        return False

    @staticmethod
    def _compute_confidence(n_samples: int) -> float:
        """0.5 at LOOKBACK samples, rising linearly to 1.0 at a full window."""
        if n_samples <= LOOKBACK:
            return 0.5
        confidence = 0.5 + (n_samples - LOOKBACK) / (MAX_SAMPLES - LOOKBACK) * 0.5
        return min(confidence, 1.0)

    def __repr__(self) -> str:
        return (
            f"ResponseTimePredictor(machine_id={self.machine_id}, "
            f"trained={self._trained}, mean={self._mean:.3f}, std={self._std:.3f})"
        )
