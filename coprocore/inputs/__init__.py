"""
Frontière d'ingestion : montants saisis et relevés bancaires importés.
"""
