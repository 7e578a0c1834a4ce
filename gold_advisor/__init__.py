"""Gold price signal and decision engine.

Polls a retail gold quote plus macro indicators, scores the probability of
an upward move over a configurable horizon, turns it into a fee-aware
BUY/SELL/HOLD recommendation against the user's holdings, and tracks how
well past forecasts held up.

Usage::

    python3 -m gold_advisor --port 8787
"""
