"""
Modèle Pandera pour les soldes par propriétaire d'un exercice comptable.
"""

import polars as pl
import pandera.polars as pa


class SoldeExercice(pa.DataFrameModel):
    """
    📌 Solde d'un propriétaire sur un exercice.

    solde_fin = solde_debut + total_provisions - total_charges + total_ajustements
    """

    proprietaire_id: pl.Utf8 = pa.Field(nullable=False, unique=True)

    # 💶 Report à nouveau de l'exercice précédent
    solde_debut: pl.Float64 = pa.Field(nullable=False)
    total_provisions: pl.Float64 = pa.Field(nullable=False, ge=0)
    total_charges: pl.Float64 = pa.Field(nullable=False, ge=0)
    total_ajustements: pl.Float64 = pa.Field(nullable=False)
    solde_fin: pl.Float64 = pa.Field(nullable=False)

    # 🏦 Fonds de réserve, suivi à part du solde
    cotisation_reserve: pl.Float64 = pa.Field(nullable=False, ge=0)

    @pa.dataframe_check
    def verifier_equation_solde(cls, data) -> pl.LazyFrame:
        """Vérifie l'équation du solde à un centime près."""
        attendu = (
            pl.col("solde_debut")
            + pl.col("total_provisions")
            - pl.col("total_charges")
            + pl.col("total_ajustements")
        )
        return data.lazyframe.select((pl.col("solde_fin") - attendu).abs() < 0.005)

    class Config:
        strict = "filter"
        coerce = True
