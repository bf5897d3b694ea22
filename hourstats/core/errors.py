"""Exception taxonomy shared by the stores and stage drivers."""


class HourstatsError(Exception):
    """Base class for pipeline errors."""


class RunStateNotFoundError(HourstatsError):
    """No state row exists for the requested (run, stage)."""

    def __init__(self, run_id: str, stage: str | None = None):
        self.run_id = run_id
        self.stage = stage
        where = f"{run_id}/{stage}" if stage else run_id
        super().__init__(f"Run state not found: {where}")


class InvalidStageTransitionError(HourstatsError):
    """A stage row was derived from a stage that may not precede it."""

    def __init__(self, from_stage: str, to_stage: str):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid stage transition: {from_stage} -> {to_stage}")


class ConcurrentUpdateError(HourstatsError):
    """An optimistic store transaction kept losing to concurrent writers."""


class SecretNotFoundError(HourstatsError):
    """A secret or parameter lookup found no value."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret not found: {name}")


class NoObservationsError(HourstatsError):
    """No observations exist in the requested window."""
