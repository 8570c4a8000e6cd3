# tests/test_time_machine.py
"""
Tests for the virtual clock.

Run:
    pytest tests/test_time_machine.py -v
"""
from datetime import date, datetime, timezone

import pytest

from mlm_system.utils.time_machine import timeMachine


class TestTimeMachine:

    def test_frozen_time(self, frozen_time):
        assert timeMachine.now == frozen_time
        assert timeMachine.today == date(2027, 2, 1)
        assert timeMachine.currentMonth == "2027-02"

    def test_advance_time(self):
        timeMachine.advanceTime(days=27, hours=20)

        assert timeMachine.now == datetime(2027, 3, 1, 5, 0, tzinfo=timezone.utc)
        assert timeMachine.currentMonth == "2027-03"

    def test_advance_requires_virtual_time(self):
        timeMachine.resetToRealTime()

        with pytest.raises(ValueError):
            timeMachine.advanceTime(days=1)
