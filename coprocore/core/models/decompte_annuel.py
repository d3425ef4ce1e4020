"""
Modèle Pandera pour les décomptes annuels calculés par propriétaire.
"""

import polars as pl
import pandera.polars as pa
from typing import Optional


class DecompteAnnuelModele(pa.DataFrameModel):
    """
    📌 Décompte annuel d'un propriétaire (sortie du moteur de décompte).
    """

    proprietaire_id: pl.Utf8 = pa.Field(nullable=False, unique=True)
    nom: pl.Utf8 = pa.Field(nullable=False)
    prenom: Optional[pl.Utf8] = pa.Field(nullable=True)
    milliemes: pl.Int64 = pa.Field(ge=0)
    quote_part: pl.Float64 = pa.Field(ge=0, le=1)

    charges_communes: pl.Float64 = pa.Field(ge=0)
    frais: pl.Float64 = pa.Field(ge=0)
    depots: pl.Float64 = pa.Field(ge=0)
    solde_debut: pl.Float64
    ajustements: pl.Float64
    solde_fin: pl.Float64

    statut: pl.Utf8 = pa.Field(isin=["a_jour", "attention"])

    class Config:
        strict = True
        coerce = True
