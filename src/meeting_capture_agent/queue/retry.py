"""
Политика ретраев задач очереди.

Назначение:
- экспоненциальный backoff: base * 2^(attempt-1), с потолком cap
- решение "ретрай или терминал" по attempts/max_attempts и флагу retryable

Важно:
- задержка не реализуется sleep-ом в воркере: Job Store откладывает задачу
  (available_at) и не отдаёт её в lease до наступления времени
"""

from __future__ import annotations

from dataclasses import dataclass


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Задержка перед следующей попыткой (сек).
    attempt — номер только что завершившейся попытки (с 1).
    """
    n = max(1, int(attempt))
    return float(min(cap, base * (2 ** (n - 1))))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_base_sec: float
    backoff_cap_sec: float = 300.0

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff_base_sec, self.backoff_cap_sec)

    def should_retry(self, *, attempt: int, retryable: bool) -> bool:
        return bool(retryable) and attempt < self.max_attempts
