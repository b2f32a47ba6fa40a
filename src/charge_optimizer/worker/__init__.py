"""Worker package for the schedule and tariff background loops."""

from charge_optimizer.worker.service import CycleResult, ScheduleWorker, TariffWorker, Worker

__all__ = ["CycleResult", "ScheduleWorker", "TariffWorker", "Worker"]
