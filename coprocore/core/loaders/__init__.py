"""
Chargeurs de données CoproCore.
"""
