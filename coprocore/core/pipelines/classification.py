"""
Expressions Polars pour la classification des mouvements bancaires.

Ce module porte les règles partagées par le moteur de décompte et l'import
bancaire :
- Frais : charge dont le libellé contient un mot-clé de frais
- Charge commune : toute autre charge
- Dépôt : tout mouvement qui n'est pas une charge (versement, remboursement...)

L'attribution d'un dépôt à un propriétaire se fait par identifiant explicite,
puis, à défaut, par reconnaissance du nom dans la contrepartie ou le libellé.
Une correspondance multiple n'est jamais attribuée automatiquement.
"""

import logging
import warnings
from typing import Optional, Sequence

import polars as pl

from coprocore.core.configuration import mots_cles_frais
from coprocore.core.erreurs import AttributionAmbigueWarning, ProprietaireIntrouvable

logger = logging.getLogger(__name__)


COLONNES_OPTIONNELLES = {
    "date_transaction": pl.Date,
    "date_comptabilisation": pl.Date,
    "created_at": pl.Datetime("us"),
    "description": pl.Utf8,
    "nom_contrepartie": pl.Utf8,
    "communication": pl.Utf8,
    "categorie": pl.Utf8,
    "proprietaire_id": pl.Utf8,
}


def completer_colonnes(transactions: pl.LazyFrame) -> pl.LazyFrame:
    """
    Ajoute à null les colonnes optionnelles absentes d'un flux de transactions.

    Args:
        transactions: LazyFrame de mouvements

    Returns:
        LazyFrame contenant toutes les colonnes de COLONNES_OPTIONNELLES
    """
    presentes = transactions.collect_schema().names()
    manquantes = [
        pl.lit(None, dtype=dtype).alias(nom)
        for nom, dtype in COLONNES_OPTIONNELLES.items()
        if nom not in presentes
    ]
    return transactions.with_columns(manquantes) if manquantes else transactions


# =============================================================================
# EXPRESSIONS DE CLASSIFICATION
# =============================================================================

def expr_texte_mouvement() -> pl.Expr:
    """
    Expression du libellé de référence d'un mouvement, en minuscules.

    La description est retenue si elle est renseignée, sinon la communication.

    Returns:
        Expression Polars Utf8 (jamais nulle)
    """
    description = pl.col("description").str.strip_chars()
    return (
        pl.when(description.is_not_null() & (description != ""))
        .then(pl.col("description"))
        .otherwise(pl.col("communication"))
        .fill_null("")
        .str.to_lowercase()
    )


def expr_est_frais(mots_cles: Optional[Sequence[str]] = None) -> pl.Expr:
    """
    Expression indiquant si le libellé d'un mouvement correspond à un frais.

    Args:
        mots_cles: Mots-clés en minuscules (par défaut ceux de la configuration)

    Returns:
        Expression Polars booléenne

    Example:
        >>> df.with_columns(expr_est_frais().alias("est_frais"))
    """
    mots = list(mots_cles) if mots_cles is not None else list(mots_cles_frais())
    return expr_texte_mouvement().str.contains_any(mots, ascii_case_insensitive=True)


def expr_nature_mouvement(mots_cles: Optional[Sequence[str]] = None) -> pl.Expr:
    """
    Expression de la nature comptable d'un mouvement.

    Returns:
        Expression Polars retournant "frais", "charge_commune" ou "depot"
    """
    est_charge = pl.col("type") == "charge"
    return (
        pl.when(est_charge & expr_est_frais(mots_cles))
        .then(pl.lit("frais"))
        .when(est_charge)
        .then(pl.lit("charge_commune"))
        .otherwise(pl.lit("depot"))
    )


def expr_date_effective() -> pl.Expr:
    """
    Expression de la date retenue pour rattacher un mouvement à un exercice.

    Première date non nulle parmi date_transaction, date_comptabilisation, created_at.
    """
    return pl.coalesce(
        pl.col("date_transaction"),
        pl.col("date_comptabilisation"),
        pl.col("created_at").cast(pl.Date),
    )


# =============================================================================
# PIPELINES DE CLASSIFICATION
# =============================================================================

def filtrer_annee(transactions: pl.LazyFrame, annee: int) -> pl.LazyFrame:
    """Conserve les mouvements dont la date effective tombe dans l'année."""
    return (
        completer_colonnes(transactions)
        .filter(expr_date_effective().dt.year() == annee)
    )


def classifier_mouvements(
    transactions: pl.LazyFrame,
    mots_cles: Optional[Sequence[str]] = None,
) -> pl.LazyFrame:
    """
    Ajoute la colonne `nature` (frais / charge_commune / depot).

    La nature est recalculée à partir des colonnes sources : appliquer deux fois
    la classification produit le même résultat.

    Args:
        transactions: LazyFrame de mouvements
        mots_cles: Mots-clés de frais (optionnel)

    Returns:
        LazyFrame avec la colonne `nature`
    """
    return (
        completer_colonnes(transactions)
        .with_columns(expr_nature_mouvement(mots_cles).alias("nature"))
    )


def verifier_references(transactions: pl.LazyFrame, proprietaires: pl.LazyFrame) -> None:
    """
    Vérifie que chaque identifiant de propriétaire explicite existe.

    Raises:
        ProprietaireIntrouvable: Si un mouvement référence un propriétaire inconnu
    """
    inconnus = (
        completer_colonnes(transactions)
        .filter(pl.col("proprietaire_id").is_not_null())
        .select(pl.col("proprietaire_id").cast(pl.Utf8))
        .unique()
        .join(
            proprietaires.select(pl.col("proprietaire_id").cast(pl.Utf8)),
            on="proprietaire_id",
            how="anti",
        )
        .collect()
    )
    if inconnus.height:
        raise ProprietaireIntrouvable(inconnus["proprietaire_id"].to_list())


def _noms_proprietaires(proprietaires: pl.LazyFrame) -> pl.LazyFrame:
    """Formes minuscules du nom et du nom complet "prenom nom" de chaque propriétaire."""
    prenom = (
        pl.col("prenom").fill_null("") if "prenom" in proprietaires.collect_schema().names()
        else pl.lit("")
    )
    return proprietaires.select(
        pl.col("proprietaire_id").cast(pl.Utf8).alias("candidat"),
        pl.col("nom").fill_null("").str.strip_chars().str.to_lowercase().alias("nom_bas"),
        pl.concat_str([prenom, pl.col("nom").fill_null("")], separator=" ")
        .str.strip_chars()
        .str.to_lowercase()
        .alias("nom_complet_bas"),
    )


def _correspondance_nom(colonne_nom: str) -> pl.Expr:
    cible = pl.col(colonne_nom)
    return (cible != "") & (
        pl.col("_contrepartie").str.contains(cible, literal=True)
        | pl.col("_texte").str.contains(cible, literal=True)
    )


def attribuer_depots(transactions: pl.LazyFrame, proprietaires: pl.LazyFrame) -> pl.LazyFrame:
    """
    Attribue chaque dépôt à un propriétaire.

    Règles :
    - `proprietaire_id` renseigné : attribution explicite
    - sinon, le nom (ou "prenom nom") du propriétaire apparaît dans la
      contrepartie ou le libellé, sans tenir compte de la casse
    - plusieurs propriétaires correspondent : pas d'attribution, mode "ambigu"

    Args:
        transactions: LazyFrame classifié (colonne `nature`, ajoutée si absente)
        proprietaires: LazyFrame des propriétaires (proprietaire_id, nom, prenom)

    Returns:
        LazyFrame avec `proprietaire_attribue`, `mode_attribution` et `candidats`
    """
    if "nature" not in transactions.collect_schema().names():
        transactions = classifier_mouvements(transactions)

    transactions = completer_colonnes(transactions).with_row_index("_ligne")

    depots_a_reconnaitre = (
        transactions
        .filter((pl.col("nature") == "depot") & pl.col("proprietaire_id").is_null())
        .select(
            "_ligne",
            pl.col("nom_contrepartie").fill_null("").str.to_lowercase().alias("_contrepartie"),
            pl.concat_str(
                [pl.col("communication").fill_null(""), pl.col("description").fill_null("")],
                separator=" ",
            ).str.to_lowercase().alias("_texte"),
        )
    )

    candidats = (
        depots_a_reconnaitre
        .join(_noms_proprietaires(proprietaires), how="cross")
        .filter(_correspondance_nom("nom_bas") | _correspondance_nom("nom_complet_bas"))
        .group_by("_ligne")
        .agg(pl.col("candidat").unique().sort().alias("candidats"))
    )

    nb_candidats = pl.col("candidats").list.len().fill_null(0)
    est_depot = pl.col("nature") == "depot"
    explicite = pl.col("proprietaire_id").is_not_null()

    resultat = (
        transactions
        .join(candidats, on="_ligne", how="left")
        .with_columns(
            pl.when(est_depot & explicite)
            .then(pl.col("proprietaire_id").cast(pl.Utf8))
            .when(est_depot & (nb_candidats == 1))
            .then(pl.col("candidats").list.first())
            .otherwise(pl.lit(None, dtype=pl.Utf8))
            .alias("proprietaire_attribue"),

            pl.when(est_depot & explicite)
            .then(pl.lit("explicite"))
            .when(est_depot & (nb_candidats == 1))
            .then(pl.lit("nom"))
            .when(est_depot & (nb_candidats > 1))
            .then(pl.lit("ambigu"))
            .otherwise(pl.lit(None, dtype=pl.Utf8))
            .alias("mode_attribution"),
        )
        .sort("_ligne")
        .drop("_ligne")
    )

    nb_ambigus = resultat.select((pl.col("mode_attribution") == "ambigu").sum()).collect().item()
    if nb_ambigus:
        message = f"{nb_ambigus} versement(s) correspondant à plusieurs propriétaires, attribution à confirmer"
        logger.warning(message)
        warnings.warn(message, AttributionAmbigueWarning, stacklevel=2)

    return resultat


def depots_ambigus(transactions_attribuees: pl.LazyFrame) -> pl.LazyFrame:
    """Dépôts en attente de confirmation manuelle du propriétaire."""
    return transactions_attribuees.filter(pl.col("mode_attribution") == "ambigu")
