"""
Moteur de décompte annuel des copropriétaires.

Pour un immeuble et une année, calcule pour chaque propriétaire :
- sa quote-part (millièmes / total des millièmes, 0 si le total est nul)
- sa part des charges communes et des frais, au prorata de la quote-part
- ses dépôts (versements attribués explicitement ou par reconnaissance du nom)
- son solde final : solde_debut + depots - charges_communes - frais + ajustements
- son statut : "a_jour" si le solde final est positif ou nul, sinon "attention"

Aucun arrondi n'est appliqué dans les calculs ; l'arrondi au centime relève
de l'affichage (voir coprocore.core.utils.formatage).

Pipelines disponibles :
- calculer_decomptes : un décompte par propriétaire (LazyFrame)
- calculer_decompte_proprietaire : décompte d'un seul propriétaire (DecompteAnnuel)
- calculer_totaux_immeuble / resume_immeuble : totaux de l'immeuble
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Mapping, Optional, Union

import polars as pl

from coprocore.core.configuration import charger_configuration
from coprocore.core.erreurs import ProprietaireIntrouvable
from coprocore.core.models.decompte_annuel import DecompteAnnuelModele
from coprocore.core.models.proprietaire import Proprietaire
from coprocore.core.models.transaction import Transaction
from coprocore.core.pipelines.classification import (
    attribuer_depots,
    classifier_mouvements,
    completer_colonnes,
    filtrer_annee,
    verifier_references,
)
from coprocore.inputs.montants import normaliser_montants

logger = logging.getLogger(__name__)

ValeursParProprietaire = Union[pl.LazyFrame, pl.DataFrame, Mapping[str, float], None]


@dataclass(frozen=True)
class DecompteAnnuel:
    """Décompte annuel d'un propriétaire."""

    proprietaire_id: str
    nom: str
    prenom: Optional[str]
    annee: int
    milliemes: int
    total_milliemes: int
    quote_part: float
    charges_communes: float
    frais: float
    depots: float
    solde_debut: float
    ajustements: float
    solde_fin: float
    statut: str
    nb_depots: int = 0
    depots_ambigus: int = 0
    nb_montants_invalides: int = 0

    @property
    def pourcentage(self) -> float:
        return self.quote_part * 100

    @property
    def total_a_payer(self) -> float:
        return self.charges_communes + self.frais

    def vers_dict(self) -> dict:
        return {**asdict(self), "pourcentage": self.pourcentage}


# =============================================================================
# EXPRESSIONS
# =============================================================================

def expr_milliemes() -> pl.Expr:
    """Quote-part brute d'un propriétaire, nulle si non renseignée."""
    return pl.col("milliemes").cast(pl.Int64).fill_null(0)


def expr_quote_part() -> pl.Expr:
    """
    Expression de la quote-part d'un propriétaire.

    Formule : milliemes / somme des milliemes de l'immeuble ; 0 si la somme est nulle.

    Returns:
        Expression Polars Float64 entre 0 et 1

    Example:
        >>> proprietaires.with_columns(expr_quote_part().alias("quote_part"))
    """
    total = pl.col("milliemes").sum()
    return (
        pl.when(total > 0)
        .then(pl.col("milliemes").cast(pl.Float64) / total)
        .otherwise(pl.lit(0.0))
    )


def expr_solde_fin() -> pl.Expr:
    """solde_debut + depots - charges_communes - frais + ajustements"""
    return (
        pl.col("solde_debut")
        + pl.col("depots")
        - pl.col("charges_communes")
        - pl.col("frais")
        + pl.col("ajustements")
    )


def expr_statut_solde(colonne: str = "solde_fin") -> pl.Expr:
    """
    Expression du statut d'un solde.

    Zéro est considéré comme à jour.

    Returns:
        Expression Polars retournant "a_jour" ou "attention"
    """
    return (
        pl.when(pl.col(colonne) >= 0)
        .then(pl.lit("a_jour"))
        .otherwise(pl.lit("attention"))
    )


# =============================================================================
# PRÉPARATION
# =============================================================================

def preparer_proprietaires(proprietaires: pl.LazyFrame) -> pl.LazyFrame:
    """
    Normalise et valide la liste des propriétaires (identifiant texte, millièmes entiers).

    Le nombre de parts, s'il est renseigné, prime sur les millièmes.

    Raises:
        SchemaError: Identifiant manquant ou en double, millièmes négatifs
    """
    colonnes = proprietaires.collect_schema().names()
    milliemes = (
        pl.coalesce(pl.col("nombre_parts").cast(pl.Int64), expr_milliemes())
        if "nombre_parts" in colonnes else expr_milliemes()
    )
    prenom = pl.col("prenom").cast(pl.Utf8) if "prenom" in colonnes else pl.lit(None, dtype=pl.Utf8)
    return Proprietaire.validate(
        proprietaires.select(
            pl.col("proprietaire_id").cast(pl.Utf8),
            pl.col("nom").cast(pl.Utf8).fill_null(""),
            prenom.alias("prenom"),
            milliemes.alias("milliemes"),
        ).collect()
    ).lazy()


def preparer_mouvements(
    transactions: pl.LazyFrame,
    proprietaires: pl.LazyFrame,
    annee: int,
) -> pl.DataFrame:
    """
    Filtre, classe et attribue les mouvements d'une année.

    Args:
        transactions: Tous les mouvements de l'immeuble
        proprietaires: Propriétaires de l'immeuble
        annee: Année de l'exercice

    Returns:
        DataFrame avec `nature`, `montant_invalide` et les colonnes d'attribution

    Raises:
        ProprietaireIntrouvable: Si un mouvement de l'année référence un propriétaire inconnu
        SchemaError: Mouvement sans identifiant ni type
    """
    mouvements = filtrer_annee(completer_colonnes(transactions), annee)
    mouvements = Transaction.validate(normaliser_montants(mouvements).collect()).lazy()

    verifier_references(mouvements, proprietaires)

    resultat = attribuer_depots(classifier_mouvements(mouvements), proprietaires).collect()
    logger.debug(f"{resultat.height} mouvement(s) retenu(s) pour {annee}")
    return resultat


def _valeurs_par_proprietaire(valeurs: ValeursParProprietaire, colonne: str) -> pl.LazyFrame:
    """Convertit un mapping ou un frame en LazyFrame (proprietaire_id, colonne)."""
    if valeurs is None:
        return pl.LazyFrame(schema={"proprietaire_id": pl.Utf8, colonne: pl.Float64})
    if isinstance(valeurs, Mapping):
        return pl.LazyFrame(
            {
                "proprietaire_id": [str(k) for k in valeurs],
                colonne: [float(v) for v in valeurs.values()],
            },
            schema={"proprietaire_id": pl.Utf8, colonne: pl.Float64},
        )
    return valeurs.lazy().select(
        pl.col("proprietaire_id").cast(pl.Utf8),
        pl.col(colonne).cast(pl.Float64),
    )


# =============================================================================
# CALCUL DES DÉCOMPTES
# =============================================================================

def totaux_mouvements(mouvements: pl.DataFrame) -> Dict[str, float]:
    """Totaux d'un ensemble de mouvements déjà classifiés."""
    montant = pl.col("montant").abs()
    totaux = mouvements.select(
        montant.filter(pl.col("nature") == "charge_commune").sum().alias("total_charges_communes"),
        montant.filter(pl.col("nature") == "frais").sum().alias("total_frais"),
        montant.filter(pl.col("nature") == "depot").sum().alias("total_depots"),
        pl.len().alias("nb_mouvements"),
        pl.col("montant_invalide").sum().alias("nb_montants_invalides"),
    ).row(0, named=True)
    return {
        "total_charges_communes": float(totaux["total_charges_communes"] or 0.0),
        "total_frais": float(totaux["total_frais"] or 0.0),
        "total_depots": float(totaux["total_depots"] or 0.0),
        "nb_mouvements": int(totaux["nb_mouvements"]),
        "nb_montants_invalides": int(totaux["nb_montants_invalides"] or 0),
    }


def _decomptes_depuis_mouvements(
    mouvements: pl.DataFrame,
    proprietaires: pl.LazyFrame,
    soldes_debut: ValeursParProprietaire,
    ajustements: ValeursParProprietaire,
) -> pl.LazyFrame:
    totaux = totaux_mouvements(mouvements)

    depots = (
        mouvements.lazy()
        .filter(pl.col("proprietaire_attribue").is_not_null())
        .group_by(pl.col("proprietaire_attribue").alias("proprietaire_id"))
        .agg(pl.col("montant").abs().sum().alias("depots"))
    )

    return (
        preparer_proprietaires(proprietaires)
        .with_columns(expr_quote_part().alias("quote_part"))
        .with_columns(
            (pl.col("quote_part") * totaux["total_charges_communes"]).alias("charges_communes"),
            (pl.col("quote_part") * totaux["total_frais"]).alias("frais"),
        )
        .join(depots, on="proprietaire_id", how="left")
        .join(_valeurs_par_proprietaire(soldes_debut, "solde_debut"), on="proprietaire_id", how="left")
        .join(_valeurs_par_proprietaire(ajustements, "ajustements"), on="proprietaire_id", how="left")
        .with_columns(
            pl.col("depots").fill_null(0.0),
            pl.col("solde_debut").fill_null(0.0),
            pl.col("ajustements").fill_null(0.0),
        )
        .with_columns(expr_solde_fin().alias("solde_fin"))
        .with_columns(expr_statut_solde().alias("statut"))
        .select(
            "proprietaire_id", "nom", "prenom", "milliemes", "quote_part",
            "charges_communes", "frais", "depots",
            "solde_debut", "ajustements", "solde_fin", "statut",
        )
    )


def calculer_decomptes(
    transactions: pl.LazyFrame,
    proprietaires: pl.LazyFrame,
    annee: int,
    soldes_debut: ValeursParProprietaire = None,
    ajustements: ValeursParProprietaire = None,
) -> pl.LazyFrame:
    """
    Calcule le décompte annuel de chaque propriétaire d'un immeuble.

    Args:
        transactions: Tous les mouvements de l'immeuble (toutes années)
        proprietaires: Propriétaires (proprietaire_id, nom, prenom, milliemes)
        annee: Année du décompte
        soldes_debut: Report à nouveau par propriétaire (0 si absent)
        ajustements: Ajustements manuels signés par propriétaire (0 si absent)

    Returns:
        LazyFrame conforme à DecompteAnnuelModele, une ligne par propriétaire

    Example:
        >>> decomptes = calculer_decomptes(transactions, proprietaires, 2024).collect()
    """
    mouvements = preparer_mouvements(transactions, proprietaires, annee)
    decomptes = _decomptes_depuis_mouvements(mouvements, proprietaires, soldes_debut, ajustements)
    return DecompteAnnuelModele.validate(decomptes.collect()).lazy()


def calculer_decompte_proprietaire(
    transactions: pl.LazyFrame,
    proprietaires: pl.LazyFrame,
    annee: int,
    proprietaire_id: str,
    solde_debut: float = 0.0,
    ajustements: float = 0.0,
) -> DecompteAnnuel:
    """
    Calcule le décompte annuel d'un propriétaire.

    Args:
        transactions: Tous les mouvements de l'immeuble
        proprietaires: Tous les propriétaires de l'immeuble (nécessaires au prorata)
        annee: Année du décompte
        proprietaire_id: Propriétaire concerné
        solde_debut: Report à nouveau de l'exercice précédent clôturé
        ajustements: Ajustement manuel signé

    Returns:
        DecompteAnnuel du propriétaire

    Raises:
        ProprietaireIntrouvable: Si le propriétaire ou une référence de mouvement est inconnu
    """
    proprietaire_id = str(proprietaire_id)
    mouvements = preparer_mouvements(transactions, proprietaires, annee)

    decomptes = _decomptes_depuis_mouvements(
        mouvements,
        proprietaires,
        {proprietaire_id: solde_debut},
        {proprietaire_id: ajustements},
    ).collect()

    ligne = decomptes.filter(pl.col("proprietaire_id") == proprietaire_id)
    if ligne.is_empty():
        raise ProprietaireIntrouvable([proprietaire_id])

    valeurs = ligne.row(0, named=True)
    depots = mouvements.filter(pl.col("nature") == "depot")

    return DecompteAnnuel(
        annee=annee,
        total_milliemes=int(decomptes["milliemes"].sum()),
        nb_depots=depots.filter(pl.col("proprietaire_attribue") == proprietaire_id).height,
        depots_ambigus=depots.filter(
            (pl.col("mode_attribution") == "ambigu")
            & pl.col("candidats").list.contains(proprietaire_id)
        ).height,
        nb_montants_invalides=int(mouvements["montant_invalide"].sum()),
        **valeurs,
    )


# =============================================================================
# TOTAUX DE L'IMMEUBLE
# =============================================================================

def calculer_totaux_immeuble(
    transactions: pl.LazyFrame,
    annee: int,
) -> Dict[str, float]:
    """
    Totaux des mouvements d'un immeuble pour une année.

    Returns:
        Dictionnaire total_charges_communes, total_frais, total_depots,
        nb_mouvements, nb_montants_invalides
    """
    mouvements = classifier_mouvements(normaliser_montants(filtrer_annee(transactions, annee)))
    return totaux_mouvements(mouvements.collect())


def resume_immeuble(
    decomptes: Union[pl.LazyFrame, pl.DataFrame],
    totaux: Optional[Dict[str, float]] = None,
) -> Dict[str, float]:
    """
    Synthèse des décomptes d'un immeuble.

    Args:
        decomptes: Sortie de calculer_decomptes
        totaux: Totaux de l'immeuble, pour mesurer l'écart de proration

    Returns:
        Dictionnaire des totaux et du nombre de créditeurs / débiteurs
    """
    df = decomptes.lazy().collect()
    resume = {
        "nb_proprietaires": df.height,
        "total_milliemes": int(df["milliemes"].sum()),
        "total_charges_communes": float(df["charges_communes"].sum()),
        "total_frais": float(df["frais"].sum()),
        "total_depots": float(df["depots"].sum()),
        "total_ran": float(df["solde_debut"].sum()),
        "solde_global": float(df["solde_fin"].sum()),
        "nb_crediteurs": df.filter(pl.col("solde_fin") >= 0).height,
        "nb_debiteurs": df.filter(pl.col("solde_fin") < 0).height,
    }
    if totaux is not None:
        resume["ecart_proration"] = (
            totaux["total_charges_communes"] + totaux["total_frais"]
            - resume["total_charges_communes"] - resume["total_frais"]
        )
    return resume


def verifier_total_milliemes(
    proprietaires: pl.LazyFrame,
    total_declare: Optional[int] = None,
) -> int:
    """
    Écart entre la somme des millièmes et le total déclaré de l'immeuble.

    L'écart est signalé dans les logs mais n'empêche pas le calcul : la proration
    se fait toujours sur la somme effective des millièmes.

    Returns:
        somme des millièmes - total déclaré
    """
    if total_declare is None:
        total_declare = charger_configuration()["total_milliemes_declare"]

    total = preparer_proprietaires(proprietaires).select(pl.col("milliemes").sum()).collect().item()
    ecart = int(total or 0) - int(total_declare)
    if ecart:
        logger.warning(f"Total des millièmes {total} différent du total déclaré {total_declare}")
    return ecart
