"""
Item Service package: the product catalog and source of truth for item prices.
"""
