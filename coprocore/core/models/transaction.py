"""
Modèle Pandera pour les mouvements financiers d'un immeuble.
"""

import polars as pl
import pandera.polars as pa
from typing import Optional


class Transaction(pa.DataFrameModel):
    """
    📌 Mouvement bancaire (charge, versement de provision, frais).

    Le montant peut être signé ; le moteur de décompte travaille sur la valeur
    absolue et s'appuie sur `type` pour distinguer charges et dépôts
    (tout type autre que "charge" est un dépôt).
    """

    transaction_id: pl.Utf8 = pa.Field(nullable=False)

    # 📆 Dates candidates pour l'exercice (première non nulle retenue)
    date_transaction: Optional[pl.Date] = pa.Field(nullable=True)
    date_comptabilisation: Optional[pl.Date] = pa.Field(nullable=True)
    created_at: Optional[pl.Datetime] = pa.Field(nullable=True)

    montant: pl.Float64 = pa.Field(nullable=False)
    type: pl.Utf8 = pa.Field(nullable=False)

    # 🏷️ Libellés libres
    description: Optional[pl.Utf8] = pa.Field(nullable=True)
    nom_contrepartie: Optional[pl.Utf8] = pa.Field(nullable=True)
    communication: Optional[pl.Utf8] = pa.Field(nullable=True)
    categorie: Optional[pl.Utf8] = pa.Field(nullable=True)

    # 👤 Attribution explicite (prioritaire sur la reconnaissance par nom)
    proprietaire_id: Optional[pl.Utf8] = pa.Field(nullable=True)

    @pa.dataframe_check
    def verifier_presence_date(cls, data) -> pl.LazyFrame:
        """Chaque mouvement doit porter au moins une date exploitable."""
        return data.lazyframe.select(
            pl.coalesce(
                pl.col("date_transaction"),
                pl.col("date_comptabilisation"),
                pl.col("created_at").cast(pl.Date),
            ).is_not_null()
        )

    class Config:
        coerce = True
