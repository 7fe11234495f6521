from typing import Iterable, List
from courier_dispatch.models.snapshots import CourierSnapshot


def ranking_key(candidate: CourierSnapshot) -> tuple:
    # Idle couriers first, then the better rated, then by id so ties are reproducible.
    return (candidate.active_assignments, -candidate.rating, candidate.courier_id)


def rank(candidates: Iterable[CourierSnapshot]) -> List[CourierSnapshot]:
    """Order candidates by load ascending, then rating descending."""
    return sorted(candidates, key=ranking_key)
