"""
Strategy package.

Strategies:
- strategies.*: five entry session variants

Registry:
- get_strategy / list_strategies / get_strategy_options
"""
