"""
Vyapaar Saathi realtime sync layer

Keeps the shop-owner dashboard panels (sales, inventory, finance, insights)
fresh over a backend change feed while bounding event and AI-credit usage.
"""

__version__ = "0.1.0"
