"""
Modèle Pandera pour les propriétaires d'un immeuble.
"""

import polars as pl
import pandera.polars as pa
from typing import Optional


class Proprietaire(pa.DataFrameModel):
    """
    📌 Propriétaire et sa quote-part de l'immeuble exprimée en millièmes.
    """

    proprietaire_id: pl.Utf8 = pa.Field(nullable=False, unique=True)
    nom: pl.Utf8 = pa.Field(nullable=False)
    prenom: Optional[pl.Utf8] = pa.Field(nullable=True)
    email: Optional[pl.Utf8] = pa.Field(nullable=True)

    # 🔹 Quote-part (millièmes ou nombre de parts)
    milliemes: pl.Int64 = pa.Field(nullable=False, ge=0)

    class Config:
        coerce = True
