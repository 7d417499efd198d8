"""
Catalog Reader - read-only lookup of pizzas and extras by id.

A missing id is a data-integrity problem, so lookups raise
CatalogIntegrityError instead of returning None.
"""
import logging
from typing import Dict, Iterable, List

from core.exceptions import CatalogIntegrityError
from .models import Pizza, Extra

logger = logging.getLogger(__name__)


class CatalogReader:
    """
    Caches every pizza and extra it has loaded, so pricing a whole order
    costs at most one query per distinct lookup batch.
    """

    def __init__(self, using: str = 'default'):
        self.using = using
        self._pizzas: Dict[int, Pizza] = {}
        self._extras: Dict[int, Extra] = {}

    def get_pizza(self, pizza_id: int) -> Pizza:
        if pizza_id not in self._pizzas:
            try:
                self._pizzas[pizza_id] = Pizza.objects.using(self.using).get(id=pizza_id)
            except Pizza.DoesNotExist:
                logger.error(f"Pizza {pizza_id} referenced but not in catalog")
                raise CatalogIntegrityError(f"Pizza {pizza_id} not found in catalog")
        return self._pizzas[pizza_id]

    def get_extras(self, extra_ids: Iterable[int]) -> List[Extra]:
        """
        Return extras in the order requested, duplicates included.
        """
        extra_ids = list(extra_ids)
        missing = {i for i in extra_ids if i not in self._extras}
        if missing:
            for extra in Extra.objects.using(self.using).filter(id__in=missing):
                self._extras[extra.id] = extra
            not_found = sorted(missing - set(self._extras))
            if not_found:
                logger.error(f"Extras {not_found} referenced but not in catalog")
                raise CatalogIntegrityError(
                    f"Extras not found in catalog: {', '.join(map(str, not_found))}"
                )
        return [self._extras[i] for i in extra_ids]

    def prefetch(self, pizza_ids: Iterable[int], extra_ids: Iterable[int]) -> None:
        """Warm the cache for a whole order in two queries."""
        pizza_ids = set(pizza_ids) - set(self._pizzas)
        if pizza_ids:
            for pizza in Pizza.objects.using(self.using).filter(id__in=pizza_ids):
                self._pizzas[pizza.id] = pizza
        extra_ids = set(extra_ids) - set(self._extras)
        if extra_ids:
            for extra in Extra.objects.using(self.using).filter(id__in=extra_ids):
                self._extras[extra.id] = extra
