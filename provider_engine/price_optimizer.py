"""
Operator selection for price lists.

When a provider lists several operators for the same country and service,
scores each option on cost (lower is better) and stock (higher is better)
and keeps the best one.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .models.canonical import PriceData


@dataclass
class ScoredOption:
    option: PriceData
    score: float
    cost_score: float
    stock_score: float


class PriceOptimizer:
    def __init__(self, cost_weight: float = 0.6, stock_weight: float = 0.4, min_stock: int = 1):
        total = cost_weight + stock_weight
        if total > 0:
            cost_weight, stock_weight = cost_weight / total, stock_weight / total
        self.cost_weight = cost_weight
        self.stock_weight = stock_weight
        self.min_stock = min_stock

    def score_option(self, option: PriceData, pool: List[PriceData]) -> ScoredOption:
        costs = [o.cost for o in pool if o.cost > 0]
        counts = [o.count for o in pool if o.count >= 0]
        min_cost, max_cost = (min(costs), max(costs)) if costs else (0.0, 0.0)
        min_count, max_count = (min(counts), max(counts)) if counts else (0, 0)

        cost_score = 0.0
        if max_cost > min_cost and option.cost > 0:
            cost_score = 1 - (option.cost - min_cost) / (max_cost - min_cost)
        elif option.cost == min_cost:
            cost_score = 1.0

        stock_score = 0.0
        if max_count > min_count and option.count >= 0:
            stock_score = (option.count - min_count) / (max_count - min_count)
        elif option.count == max_count:
            stock_score = 1.0

        score = self.cost_weight * cost_score + self.stock_weight * stock_score
        return ScoredOption(
            option=option,
            score=max(0.0, min(1.0, score)),
            cost_score=cost_score,
            stock_score=stock_score,
        )

    def rank_options(self, options: List[PriceData]) -> List[ScoredOption]:
        """Highest score first; when nothing meets min_stock every option is ranked"""
        pool = [o for o in options if o.count >= self.min_stock] or options
        return sorted((self.score_option(o, pool) for o in pool), key=lambda s: s.score, reverse=True)

    def select_best(self, options: List[PriceData]) -> Optional[PriceData]:
        if not options:
            return None
        return self.rank_options(options)[0].option

    def best_per_group(self, prices: List[PriceData]) -> List[PriceData]:
        """Collapse operator variants to one row per country:service, keeping first-seen order"""
        groups: Dict[Tuple[str, str], List[PriceData]] = {}
        for price in prices:
            groups.setdefault((price.country, price.service), []).append(price)
        return [self.select_best(options) for options in groups.values()]
