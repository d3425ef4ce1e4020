"""
Modèle Pandera pour les relevés de compteurs d'eau.
"""

import polars as pl
import pandera.polars as pa
from typing import Optional


class RelevéCompteur(pa.DataFrameModel):
    """
    📌 Relevé d'un compteur d'eau entre deux index.
    """

    compteur_id: pl.Utf8 = pa.Field(nullable=False)
    type_compteur: Optional[pl.Utf8] = pa.Field(
        nullable=True, isin=["principal", "divisionnaire", "individuel"]
    )
    proprietaire_id: Optional[pl.Utf8] = pa.Field(nullable=True)
    date_releve: Optional[pl.Date] = pa.Field(nullable=True)

    # 📏 Index en m³
    index_precedent: pl.Float64 = pa.Field(nullable=False, ge=0)
    index_actuel: pl.Float64 = pa.Field(nullable=False, ge=0)

    @pa.dataframe_check
    def verifier_index_croissant(cls, data) -> pl.LazyFrame:
        """L'index actuel ne peut pas être inférieur à l'index précédent."""
        return data.lazyframe.select(pl.col("index_actuel") >= pl.col("index_precedent"))

    class Config:
        coerce = True
