# orders/__init__.py
# Order lifecycle: totals, errors and the order service
