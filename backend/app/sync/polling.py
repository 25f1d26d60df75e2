"""Adaptive poll interval used when push notifications are unavailable."""


class AdaptivePollInterval:
    """Geometric backoff between a floor and a ceiling.

    - a poll with no new replies multiplies the interval by `growth`
    - a poll with new replies resets it to `floor`
    - a failed poll multiplies it by `error_growth`
    """

    def __init__(
        self,
        initial: float = 15.0,
        floor: float = 10.0,
        ceiling: float = 60.0,
        growth: float = 1.5,
        error_growth: float = 2.0,
    ):
        if not 0 < floor <= ceiling:
            raise ValueError("poll interval requires 0 < floor <= ceiling")

        self.initial = min(max(initial, floor), ceiling)
        self.floor = floor
        self.ceiling = ceiling
        self.growth = growth
        self.error_growth = error_growth
        self.current = self.initial

    def record_result(self, new_count: int) -> float:
        if new_count > 0:
            self.current = self.floor
        else:
            self.current = min(self.current * self.growth, self.ceiling)
        return self.current

    def record_error(self) -> float:
        self.current = min(self.current * self.error_growth, self.ceiling)
        return self.current

    def reset(self) -> None:
        self.current = self.initial
