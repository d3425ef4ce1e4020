"""
Exercices comptables et report à nouveau (RAN).

Cycle de vie d'un exercice : brouillon → ouvert → cloture → archive.

La clôture exige la confirmation textuelle "CLOTURER <annee>". Elle fige les
soldes de chaque propriétaire et reporte chaque solde final, sans aucune
correction, comme solde de début de l'exercice suivant (créé s'il n'existe pas).

Pipelines disponibles :
- creer_exercice, ouvrir_exercice, cloturer_exercice, archiver_exercice
- reporter_a_nouveau, recalculer_ran, verifier_chainage
- situation_globale, generer_appels_trimestriels, enregistrer_paiement_appel
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Iterable, Optional, Sequence, Tuple

import polars as pl

from coprocore.core.configuration import charger_configuration
from coprocore.core.erreurs import (
    ErreurValidation,
    PreconditionEchouee,
    ProprietaireIntrouvable,
    TransitionInterdite,
)
from coprocore.core.models.solde_exercice import SoldeExercice
from coprocore.core.pipelines.decompte import (
    ValeursParProprietaire,
    calculer_decomptes,
    expr_quote_part,
    preparer_proprietaires,
)

logger = logging.getLogger(__name__)

STATUTS = ("brouillon", "ouvert", "cloture", "archive")
STATUTS_FIGES = ("cloture", "archive")

COLONNES_SOLDES = [
    "proprietaire_id", "solde_debut", "total_provisions",
    "total_charges", "total_ajustements", "solde_fin", "cotisation_reserve",
]


@dataclass(frozen=True, eq=False)
class Exercice:
    """
    Exercice comptable d'un immeuble.

    `soldes` contient une ligne par propriétaire (modèle SoldeExercice).
    """

    immeuble_id: str
    annee: int
    date_debut: date
    date_fin: date
    statut: str
    soldes: pl.DataFrame

    # Clôture (renseignée par cloturer_exercice)
    date_cloture: Optional[datetime] = None
    notes_cloture: Optional[str] = None
    date_ag_approbation: Optional[date] = None
    pv_ag_reference: Optional[str] = None

    @property
    def est_fige(self) -> bool:
        return self.statut in STATUTS_FIGES

    @property
    def total_provisions(self) -> float:
        return float(self.soldes["total_provisions"].sum())

    @property
    def total_charges(self) -> float:
        return float(self.soldes["total_charges"].sum())

    @property
    def solde_global(self) -> float:
        return float(self.soldes["solde_fin"].sum())

    @property
    def total_reserve(self) -> float:
        return float(self.soldes["cotisation_reserve"].sum())

    def solde(self, proprietaire_id: str) -> Optional[dict]:
        ligne = self.soldes.filter(pl.col("proprietaire_id") == str(proprietaire_id))
        return ligne.row(0, named=True) if ligne.height else None


# =============================================================================
# SOLDES
# =============================================================================

def expr_solde_fin_exercice() -> pl.Expr:
    """solde_debut + total_provisions - total_charges + total_ajustements"""
    return (
        pl.col("solde_debut")
        + pl.col("total_provisions")
        - pl.col("total_charges")
        + pl.col("total_ajustements")
    )


def valider_soldes(soldes: pl.DataFrame) -> pl.DataFrame:
    """
    Ordonne, type et valide les soldes d'un exercice.

    Une cotisation au fonds de réserve absente vaut 0.
    """
    if "cotisation_reserve" not in soldes.columns:
        soldes = soldes.with_columns(pl.lit(0.0).alias("cotisation_reserve"))
    soldes = soldes.select(
        pl.col("proprietaire_id").cast(pl.Utf8),
        *[pl.col(c).cast(pl.Float64) for c in COLONNES_SOLDES[1:-1]],
        pl.col("cotisation_reserve").cast(pl.Float64).fill_null(0.0),
    ).sort("proprietaire_id")
    return SoldeExercice.validate(soldes)


def soldes_initiaux(
    proprietaires: pl.LazyFrame,
    exercice_precedent: Optional[Exercice] = None,
) -> pl.DataFrame:
    """
    Soldes d'ouverture d'un nouvel exercice.

    Le solde de début reprend le solde final de l'exercice précédent uniquement
    s'il est clôturé ; sinon il vaut 0.
    """
    soldes = preparer_proprietaires(proprietaires).select("proprietaire_id")

    if exercice_precedent is not None and exercice_precedent.est_fige:
        report = exercice_precedent.soldes.lazy().select(
            "proprietaire_id", pl.col("solde_fin").alias("solde_debut")
        )
        soldes = soldes.join(report, on="proprietaire_id", how="left")
    else:
        soldes = soldes.with_columns(pl.lit(None, dtype=pl.Float64).alias("solde_debut"))

    return valider_soldes(
        soldes
        .with_columns(
            pl.col("solde_debut").fill_null(0.0),
            pl.lit(0.0).alias("total_provisions"),
            pl.lit(0.0).alias("total_charges"),
            pl.lit(0.0).alias("total_ajustements"),
            pl.lit(0.0).alias("cotisation_reserve"),
        )
        .with_columns(expr_solde_fin_exercice().alias("solde_fin"))
        .collect()
    )


# =============================================================================
# CYCLE DE VIE
# =============================================================================

def creer_exercice(
    immeuble_id: str,
    annee: int,
    proprietaires: pl.LazyFrame,
    exercice_precedent: Optional[Exercice] = None,
    annees_existantes: Iterable[int] = (),
    statut: str = "brouillon",
) -> Exercice:
    """
    Crée l'exercice d'une année pour un immeuble.

    Args:
        immeuble_id: Immeuble concerné
        annee: Année de l'exercice (1er janvier au 31 décembre)
        proprietaires: Propriétaires de l'immeuble
        exercice_precedent: Exercice de l'année précédente, s'il existe
        annees_existantes: Années déjà créées pour cet immeuble
        statut: Statut initial ("brouillon" ou "ouvert")

    Returns:
        Nouvel Exercice

    Raises:
        TransitionInterdite: Si un exercice existe déjà pour cette année
    """
    if annee in set(annees_existantes):
        raise TransitionInterdite(f"❌ Un exercice existe déjà pour l'année {annee}")
    if statut not in ("brouillon", "ouvert"):
        raise TransitionInterdite(f"❌ Statut initial invalide : {statut}")

    exercice = Exercice(
        immeuble_id=str(immeuble_id),
        annee=annee,
        date_debut=date(annee, 1, 1),
        date_fin=date(annee, 12, 31),
        statut=statut,
        soldes=soldes_initiaux(proprietaires, exercice_precedent),
    )
    logger.info(f"Exercice {annee} créé pour l'immeuble {immeuble_id} ({exercice.soldes.height} propriétaires)")
    return exercice


def ouvrir_exercice(exercice: Exercice) -> Exercice:
    if exercice.statut != "brouillon":
        raise TransitionInterdite(
            f"❌ Seul un exercice en brouillon peut être ouvert (statut : {exercice.statut})"
        )
    return replace(exercice, statut="ouvert")


def archiver_exercice(exercice: Exercice) -> Exercice:
    if exercice.statut != "cloture":
        raise TransitionInterdite(
            f"❌ Seul un exercice clôturé peut être archivé (statut : {exercice.statut})"
        )
    return replace(exercice, statut="archive")


def texte_confirmation_cloture(annee: int) -> str:
    """
    Texte que l'utilisateur doit saisir pour clôturer un exercice.

    Example:
        >>> texte_confirmation_cloture(2024)
        'CLOTURER 2024'
    """
    return charger_configuration()["confirmation_cloture"].format(annee=annee)


def verifier_confirmation(exercice: Exercice, confirmation: Optional[str]) -> None:
    """
    Raises:
        PreconditionEchouee: Si la confirmation ne correspond pas exactement
    """
    attendu = texte_confirmation_cloture(exercice.annee)
    if (confirmation or "").strip() != attendu:
        raise PreconditionEchouee(f"❌ Confirmation invalide : saisir \"{attendu}\"")


def cloturer_exercice(
    exercice: Exercice,
    transactions: pl.LazyFrame,
    proprietaires: pl.LazyFrame,
    confirmation: str,
    ajustements: ValeursParProprietaire = None,
    exercice_suivant: Optional[Exercice] = None,
    notes_cloture: Optional[str] = None,
    date_ag_approbation: Optional[date] = None,
    pv_ag_reference: Optional[str] = None,
    date_cloture: Optional[datetime] = None,
) -> Tuple[Exercice, Exercice]:
    """
    Clôture un exercice et reporte les soldes sur l'exercice suivant.

    Args:
        exercice: Exercice à clôturer (brouillon ou ouvert)
        transactions: Mouvements de l'immeuble
        proprietaires: Propriétaires de l'immeuble
        confirmation: Texte saisi, doit valoir "CLOTURER <annee>"
        ajustements: Ajustements manuels ; par défaut ceux déjà portés par l'exercice
        exercice_suivant: Exercice de l'année suivante s'il existe déjà
        notes_cloture: Remarques libres sur la clôture
        date_ag_approbation: Date de l'assemblée générale approuvant les comptes
        pv_ag_reference: Référence du procès-verbal de l'assemblée
        date_cloture: Horodatage de la clôture (maintenant par défaut)

    Returns:
        (exercice clôturé, exercice suivant avec ses soldes de début reportés)

    Raises:
        TransitionInterdite: Si l'exercice est déjà clôturé ou archivé
        PreconditionEchouee: Si la confirmation est incorrecte
    """
    if exercice.est_fige:
        raise TransitionInterdite(f"❌ L'exercice {exercice.annee} est déjà {exercice.statut}")
    verifier_confirmation(exercice, confirmation)

    if ajustements is None:
        ajustements = exercice.soldes.select(
            "proprietaire_id", pl.col("total_ajustements").alias("ajustements")
        )

    decomptes = calculer_decomptes(
        transactions,
        proprietaires,
        exercice.annee,
        soldes_debut=exercice.soldes.select("proprietaire_id", "solde_debut"),
        ajustements=ajustements,
    )

    soldes = valider_soldes(
        decomptes
        .select(
            "proprietaire_id",
            "solde_debut",
            pl.col("depots").alias("total_provisions"),
            (pl.col("charges_communes") + pl.col("frais")).alias("total_charges"),
            pl.col("ajustements").alias("total_ajustements"),
            "solde_fin",
        )
        .join(
            valider_soldes(exercice.soldes).lazy().select("proprietaire_id", "cotisation_reserve"),
            on="proprietaire_id",
            how="left",
        )
        .collect()
    )

    cloture = replace(
        exercice,
        statut="cloture",
        soldes=soldes,
        date_cloture=date_cloture or datetime.now(),
        notes_cloture=notes_cloture,
        date_ag_approbation=date_ag_approbation,
        pv_ag_reference=pv_ag_reference,
    )
    logger.info(
        f"Exercice {exercice.annee} clôturé pour l'immeuble {exercice.immeuble_id} "
        f"(solde global {cloture.solde_global:.2f})"
    )
    return cloture, reporter_a_nouveau(cloture, exercice_suivant)


def _reporter_soldes(precedent: Exercice, cible: Optional[pl.DataFrame]) -> pl.DataFrame:
    """
    Soldes de l'exercice suivant après report.

    Les mouvements déjà portés par la cible sont conservés ; un propriétaire
    absent de l'exercice clôturé repart de 0.
    """
    report = precedent.soldes.lazy().select(
        "proprietaire_id", pl.col("solde_fin").alias("_report")
    )
    if cible is None:
        base = report.select("proprietaire_id")
    else:
        base = (
            pl.concat([cible.lazy().select("proprietaire_id"), report.select("proprietaire_id")])
            .unique()
        )
        base = base.join(cible.lazy().drop("solde_debut", strict=False), on="proprietaire_id", how="left")

    colonnes = base.collect_schema().names()
    totaux = [
        (pl.col(c) if c in colonnes else pl.lit(None, dtype=pl.Float64)).fill_null(0.0).alias(c)
        for c in ("total_provisions", "total_charges", "total_ajustements", "cotisation_reserve")
    ]

    return valider_soldes(
        base
        .join(report, on="proprietaire_id", how="left")
        .with_columns(
            pl.col("_report").fill_null(0.0).alias("solde_debut"),
            *totaux,
        )
        .with_columns(expr_solde_fin_exercice().alias("solde_fin"))
        .collect()
    )


def reporter_a_nouveau(
    exercice_cloture: Exercice,
    exercice_suivant: Optional[Exercice] = None,
) -> Exercice:
    """
    Reporte les soldes finaux d'un exercice clôturé sur l'exercice suivant.

    Le report est un transfert direct : solde_debut(N+1) = solde_fin(N).
    Si l'exercice suivant n'existe pas, il est créé au statut "ouvert".

    Raises:
        TransitionInterdite: Si la source n'est pas clôturée ou si la cible est figée
    """
    if not exercice_cloture.est_fige:
        raise TransitionInterdite(
            f"❌ L'exercice {exercice_cloture.annee} doit être clôturé avant le report à nouveau"
        )

    annee = exercice_cloture.annee + 1
    if exercice_suivant is None:
        suivant = Exercice(
            immeuble_id=exercice_cloture.immeuble_id,
            annee=annee,
            date_debut=date(annee, 1, 1),
            date_fin=date(annee, 12, 31),
            statut="ouvert",
            soldes=_reporter_soldes(exercice_cloture, None),
        )
        logger.info(f"Exercice {annee} créé automatiquement avec report à nouveau")
        return suivant

    if exercice_suivant.annee != annee:
        raise PreconditionEchouee(
            f"❌ L'exercice {exercice_suivant.annee} ne suit pas l'exercice {exercice_cloture.annee}"
        )
    if exercice_suivant.est_fige:
        raise TransitionInterdite(f"❌ L'exercice {annee} est {exercice_suivant.statut}, report impossible")

    logger.info(f"Report à nouveau {exercice_cloture.annee} → {annee}")
    return replace(exercice_suivant, soldes=_reporter_soldes(exercice_cloture, exercice_suivant.soldes))


def recalculer_ran(exercice: Exercice, exercice_precedent: Optional[Exercice]) -> Exercice:
    """
    Recalcule les soldes de début d'un exercice depuis l'exercice précédent clôturé.

    Raises:
        PreconditionEchouee: S'il n'existe pas d'exercice précédent clôturé
        TransitionInterdite: Si l'exercice à recalculer est figé
    """
    if exercice_precedent is None or not exercice_precedent.est_fige:
        raise PreconditionEchouee(
            f"❌ Aucun exercice {exercice.annee - 1} clôturé : report à nouveau impossible"
        )
    return reporter_a_nouveau(exercice_precedent, exercice)


# =============================================================================
# SYNTHÈSES
# =============================================================================

def situation_globale(exercice: Exercice) -> dict:
    """
    Situation globale d'un exercice.

    Returns:
        Dictionnaire total_ran, total_provisions, total_charges, total_ajustements,
        total_reserve, solde_global, nb_crediteurs, nb_debiteurs et les
        informations de clôture
    """
    soldes = exercice.soldes
    return {
        "annee": exercice.annee,
        "statut": exercice.statut,
        "nb_proprietaires": soldes.height,
        "total_ran": float(soldes["solde_debut"].sum()),
        "total_provisions": float(soldes["total_provisions"].sum()),
        "total_charges": float(soldes["total_charges"].sum()),
        "total_ajustements": float(soldes["total_ajustements"].sum()),
        "total_reserve": exercice.total_reserve,
        "solde_global": float(soldes["solde_fin"].sum()),
        "nb_crediteurs": soldes.filter(pl.col("solde_fin") >= 0).height,
        "nb_debiteurs": soldes.filter(pl.col("solde_fin") < 0).height,
        "date_cloture": exercice.date_cloture,
        "notes_cloture": exercice.notes_cloture,
        "date_ag_approbation": exercice.date_ag_approbation,
        "pv_ag_reference": exercice.pv_ag_reference,
    }


def verifier_chainage(exercices: Sequence[Exercice], tolerance: float = 0.005) -> pl.DataFrame:
    """
    Contrôle que chaque solde final clôturé est repris tel quel l'année suivante.

    Args:
        exercices: Exercices d'un même immeuble, dans un ordre quelconque
        tolerance: Écart toléré en euros

    Returns:
        DataFrame des ruptures (annee, proprietaire_id, solde_fin_precedent,
        solde_debut_suivant, ecart) ; vide si le chaînage est correct
    """
    par_annee = {e.annee: e for e in exercices}
    ruptures = []

    for annee in sorted(par_annee):
        precedent, suivant = par_annee[annee], par_annee.get(annee + 1)
        if suivant is None or not precedent.est_fige:
            continue
        ruptures.append(
            precedent.soldes.lazy()
            .select("proprietaire_id", pl.col("solde_fin").alias("solde_fin_precedent"))
            .join(
                suivant.soldes.lazy().select(
                    "proprietaire_id", pl.col("solde_debut").alias("solde_debut_suivant")
                ),
                on="proprietaire_id",
                how="left",
            )
            .with_columns(
                pl.lit(annee + 1).alias("annee"),
                (pl.col("solde_debut_suivant").fill_null(0.0) - pl.col("solde_fin_precedent")).alias("ecart"),
            )
            .filter(pl.col("ecart").abs() > tolerance)
        )

    schema = {
        "annee": pl.Int32, "proprietaire_id": pl.Utf8, "solde_fin_precedent": pl.Float64,
        "solde_debut_suivant": pl.Float64, "ecart": pl.Float64,
    }
    if not ruptures:
        return pl.DataFrame(schema=schema)
    return (
        pl.concat(ruptures)
        .select([pl.col(c).cast(t) for c, t in schema.items()])
        .collect()
    )


def expr_statut_paiement() -> pl.Expr:
    """
    Statut de paiement d'un propriétaire pour un appel.

    "paye" dès que le montant payé couvre le montant dû, "partiel" après un
    premier versement, "en_attente" sinon.
    """
    return (
        pl.when(pl.col("montant_paye") >= pl.col("montant"))
        .then(pl.lit("paye"))
        .when(pl.col("montant_paye") > 0)
        .then(pl.lit("partiel"))
        .otherwise(pl.lit("en_attente"))
    )


def expr_statut_appel() -> pl.Expr:
    """Statut global d'un appel : "complet" quand tous les propriétaires ont payé."""
    return (
        pl.when((pl.col("statut") == "paye").all().over("trimestre"))
        .then(pl.lit("complet"))
        .when((pl.col("montant_paye") > 0).any().over("trimestre"))
        .then(pl.lit("partiel"))
        .otherwise(pl.lit("en_attente"))
    )


def generer_appels_trimestriels(
    budget_annuel: float,
    annee: int,
    proprietaires: pl.LazyFrame,
) -> pl.DataFrame:
    """
    Appels de fonds trimestriels au prorata des millièmes.

    Quatre appels de budget/4, émis le 1er janvier, avril, juillet et octobre,
    échéance le 15 du même mois. Les montants sont arrondis au centime : le
    quatrième appel absorbe l'écart d'arrondi du budget, et dans chaque appel
    le dernier propriétaire absorbe l'écart d'arrondi de la répartition.

    Returns:
        DataFrame (trimestre, date_appel, date_echeance, montant_appel,
        proprietaire_id, quote_part, montant, montant_paye, statut,
        statut_appel, date_paiement, transaction_id)
    """
    montant_appel = round(budget_annuel / 4, 2)
    appels = pl.LazyFrame({
        "trimestre": [1, 2, 3, 4],
        "date_appel": [date(annee, mois, 1) for mois in (1, 4, 7, 10)],
        "date_echeance": [date(annee, mois, 15) for mois in (1, 4, 7, 10)],
        "montant_appel": [montant_appel] * 3 + [round(budget_annuel - 3 * montant_appel, 2)],
    })

    parts = (
        preparer_proprietaires(proprietaires)
        .sort("proprietaire_id")
        .with_columns(expr_quote_part().alias("quote_part"))
        .select("proprietaire_id", "quote_part")
    )

    dernier = pl.int_range(pl.len()).over("trimestre") == pl.len().over("trimestre") - 1
    a_repartir = pl.col("quote_part").sum().over("trimestre") > 0

    return (
        appels
        .join(parts, how="cross")
        .sort(["trimestre", "proprietaire_id"])
        .with_columns((pl.col("montant_appel") * pl.col("quote_part")).round(2).alias("montant"))
        .with_columns(
            pl.when(dernier & a_repartir)
            .then(pl.col("montant") + pl.col("montant_appel") - pl.col("montant").sum().over("trimestre"))
            .otherwise(pl.col("montant"))
            .round(2)
            .alias("montant")
        )
        .with_columns(pl.lit(0.0).alias("montant_paye"))
        .with_columns(expr_statut_paiement().alias("statut"))
        .with_columns(
            expr_statut_appel().alias("statut_appel"),
            pl.lit(None, dtype=pl.Date).alias("date_paiement"),
            pl.lit(None, dtype=pl.Utf8).alias("transaction_id"),
        )
        .sort(["trimestre", "proprietaire_id"])
        .collect()
    )


def enregistrer_paiement_appel(
    appels: pl.DataFrame,
    exercice: Exercice,
    trimestre: int,
    proprietaire_id: str,
    montant: float,
    date_paiement: date,
    transaction_id: Optional[str] = None,
) -> Tuple[pl.DataFrame, Exercice]:
    """
    Enregistre le paiement d'un propriétaire sur un appel de fonds.

    Le montant payé s'ajoute à celui déjà reçu ; le statut du propriétaire et
    celui de l'appel sont recalculés, et le paiement est ajouté aux provisions
    du propriétaire sur l'exercice.

    Args:
        appels: Sortie de generer_appels_trimestriels (éventuellement déjà payée)
        exercice: Exercice auquel se rattachent les appels
        trimestre: Numéro de l'appel (1 à 4)
        proprietaire_id: Propriétaire qui paie
        montant: Montant reçu (€), strictement positif
        date_paiement: Date du paiement
        transaction_id: Mouvement bancaire correspondant, s'il est connu

    Returns:
        (appels mis à jour, exercice avec ses provisions mises à jour)

    Raises:
        ErreurValidation: Montant ou date manquant
        TransitionInterdite: Si l'exercice est clôturé ou archivé
        ProprietaireIntrouvable: Si le propriétaire n'est pas concerné par l'appel
    """
    if montant is None or montant <= 0:
        raise ErreurValidation("montant", "montant du paiement requis et positif")
    if date_paiement is None:
        raise ErreurValidation("date_paiement", "date du paiement requise")
    if exercice.est_fige:
        raise TransitionInterdite(f"❌ L'exercice {exercice.annee} est {exercice.statut}, paiement refusé")

    proprietaire_id = str(proprietaire_id)
    cible = (pl.col("trimestre") == trimestre) & (pl.col("proprietaire_id") == proprietaire_id)
    if appels.filter(cible).is_empty() or exercice.solde(proprietaire_id) is None:
        raise ProprietaireIntrouvable([proprietaire_id])

    appels = (
        appels
        .with_columns(
            pl.when(cible)
            .then(pl.col("montant_paye") + montant)
            .otherwise(pl.col("montant_paye"))
            .alias("montant_paye"),
            pl.when(cible)
            .then(pl.lit(date_paiement, dtype=pl.Date))
            .otherwise(pl.col("date_paiement"))
            .alias("date_paiement"),
            pl.when(cible)
            .then(pl.lit(transaction_id, dtype=pl.Utf8))
            .otherwise(pl.col("transaction_id"))
            .alias("transaction_id"),
        )
        .with_columns(expr_statut_paiement().alias("statut"))
        .with_columns(expr_statut_appel().alias("statut_appel"))
    )

    soldes = valider_soldes(
        exercice.soldes
        .with_columns(
            pl.when(pl.col("proprietaire_id") == proprietaire_id)
            .then(pl.col("total_provisions") + montant)
            .otherwise(pl.col("total_provisions"))
            .alias("total_provisions")
        )
        .with_columns(expr_solde_fin_exercice().alias("solde_fin"))
    )

    ligne = appels.filter(cible).row(0, named=True)
    logger.info(
        f"Paiement de {montant:.2f} € de {proprietaire_id} sur l'appel {trimestre}/{exercice.annee} "
        f"({ligne['statut']})"
    )
    return appels, replace(exercice, soldes=soldes)
