"""Order reconciliation package.

Scheduled, lease-guarded reconciliation of pending storefront orders against
the AbacatePay payment gateway. Entry points live in `main` (ops API) and
`jobs.runner` (command line).
"""

__all__: list[str] = []
