"""
Expressions Polars pour le décompte et la répartition de l'eau.

Le décompte se fait en trois temps :
- Relevés : consommation = index actuel - index précédent (refusée si négative,
  signalée au-delà du seuil de consommation anormale)
- Coûts : tarification régionale (Wallonie, Bruxelles, Flandre) par logement
- Répartition : selon le mode de comptage de l'immeuble (collectif,
  divisionnaire, individuel), avec répartition des pertes au prorata
"""

import logging
from pathlib import Path
from typing import Optional

import polars as pl

from coprocore.core.configuration import charger_configuration
from coprocore.core.erreurs import ErreurChargement, ErreurValidation
from coprocore.core.models.releve_compteur import RelevéCompteur
from coprocore.core.pipelines.decompte import expr_quote_part, preparer_proprietaires

logger = logging.getLogger(__name__)

REGIONS = ("wallonie", "bruxelles", "flandre")
MODES_COMPTAGE = ("collectif", "divisionnaire", "individuel")


# =============================================================================
# RELEVÉS
# =============================================================================

def seuil_consommation_anormale() -> float:
    return float(charger_configuration()["seuil_consommation_anormale_m3"])


def valider_releve(index_precedent: Optional[float], index_actuel: Optional[float]) -> float:
    """
    Valide un relevé et retourne la consommation en m³.

    Une consommation supérieure au seuil est signalée mais acceptée.

    Args:
        index_precedent: Index du relevé précédent (m³)
        index_actuel: Index relevé (m³)

    Returns:
        Consommation en m³

    Raises:
        ErreurValidation: Index manquant, négatif, ou index actuel inférieur au précédent

    Example:
        >>> valider_releve(120.500, 135.250)
        14.75
    """
    if index_precedent is None:
        raise ErreurValidation("index_precedent", "index manquant")
    if index_actuel is None:
        raise ErreurValidation("index_actuel", "index manquant")
    if index_precedent < 0 or index_actuel < 0:
        raise ErreurValidation("index_actuel", "index négatif")
    if index_actuel < index_precedent:
        raise ErreurValidation(
            "index_actuel",
            f"l'index actuel ({index_actuel}) est inférieur à l'index précédent ({index_precedent})",
        )

    consommation = index_actuel - index_precedent
    if consommation > seuil_consommation_anormale():
        logger.warning(f"Consommation anormalement élevée : {consommation} m³")
    return consommation


def valider_releves(releves: pl.LazyFrame) -> pl.LazyFrame:
    """
    Valide un lot de relevés.

    Args:
        releves: LazyFrame avec index_precedent et index_actuel

    Returns:
        LazyFrame avec consommation (≥ 0), valide, anomalie et erreur
    """
    precedent, actuel = pl.col("index_precedent"), pl.col("index_actuel")
    erreur = (
        pl.when(precedent.is_null() | actuel.is_null())
        .then(pl.lit("Index manquant"))
        .when((precedent < 0) | (actuel < 0))
        .then(pl.lit("Index négatif"))
        .when(actuel < precedent)
        .then(pl.lit("Index actuel inférieur à l'index précédent"))
        .otherwise(pl.lit(None, dtype=pl.Utf8))
    )

    resultat = (
        releves
        .with_columns(erreur.alias("erreur"))
        .with_columns(pl.col("erreur").is_null().alias("valide"))
        .with_columns(
            pl.when(pl.col("valide"))
            .then(actuel - precedent)
            .otherwise(pl.lit(0.0))
            .cast(pl.Float64)
            .alias("consommation")
        )
        .with_columns((pl.col("consommation") > seuil_consommation_anormale()).alias("anomalie"))
    )

    bilan = resultat.select(
        (~pl.col("valide")).sum().alias("invalides"),
        pl.col("anomalie").sum().alias("anomalies"),
    ).collect().row(0, named=True)
    if bilan["invalides"]:
        logger.warning(f"{bilan['invalides']} relevé(s) invalide(s)")
    if bilan["anomalies"]:
        logger.warning(f"{bilan['anomalies']} consommation(s) anormalement élevée(s)")

    return resultat


def consommations_releves(releves: pl.LazyFrame) -> pl.DataFrame:
    """
    Consommation de chaque compteur dont le relevé est valide.

    Les relevés refusés par valider_releves sont écartés ; les relevés retenus
    sont contrôlés par le modèle RelevéCompteur avant d'alimenter repartir_eau.

    Returns:
        DataFrame (compteur_id, proprietaire_id, type_compteur, consommation)
    """
    presentes = releves.collect_schema().names()
    manquantes = [
        pl.lit(None, dtype=pl.Utf8).alias(nom)
        for nom in ("proprietaire_id", "type_compteur")
        if nom not in presentes
    ]
    releves = releves.with_columns(manquantes) if manquantes else releves

    retenus = RelevéCompteur.validate(
        valider_releves(releves)
        .filter(pl.col("valide"))
        .with_columns(
            pl.col("index_precedent").cast(pl.Float64),
            pl.col("index_actuel").cast(pl.Float64),
        )
        .collect()
    )
    return retenus.select(
        pl.col("compteur_id").cast(pl.Utf8),
        pl.col("proprietaire_id").cast(pl.Utf8),
        pl.col("type_compteur").cast(pl.Utf8),
        "consommation",
    )


# =============================================================================
# TARIFS
# =============================================================================

def normaliser_region(region: Optional[str]) -> str:
    """
    Ramène un libellé de région à "wallonie", "flandre" ou "bruxelles".

    Example:
        >>> normaliser_region("Région Wallonne")
        'wallonie'
    """
    texte = (region or "").strip().lower()
    if "wall" in texte:
        return "wallonie"
    if "fland" in texte or "vlaam" in texte:
        return "flandre"
    return "bruxelles"


def charger_tarifs_eau() -> pl.LazyFrame:
    """
    Charge les tarifs de l'eau depuis le fichier CSV.

    Returns:
        LazyFrame Polars des tarifs par région, distributeur et année

    Example:
        >>> charger_tarifs_eau().filter(pl.col("region") == "wallonie").collect()
    """
    file_path = Path(__file__).parent.parent.parent / "config" / "tarifs_eau.csv"
    colonnes_tarifaires = [
        "cve_distribution", "cve_assainissement", "redevance_fixe_annuelle",
        "tarif_unique", "contribution_fonds_eau", "tarif_base", "tarif_confort", "tva",
    ]
    colonnes_volumes = [
        "m3_gratuits_par_habitant", "max_habitants_gratuits",
        "m3_base_fixe", "m3_base_par_habitant",
    ]
    return (
        pl.scan_csv(file_path, schema_overrides={c: str for c in colonnes_tarifaires + colonnes_volumes})
        .with_columns(
            [pl.col(c).str.strip_chars().cast(pl.Float64) for c in colonnes_tarifaires]
            + [pl.col(c).str.strip_chars().cast(pl.Int64) for c in colonnes_volumes]
            + [pl.col("annee").cast(pl.Int32)]
        )
    )


def tarif_eau(
    region: str,
    annee: Optional[int] = None,
    distributeur: Optional[str] = None,
) -> dict:
    """
    Tarif applicable à une région.

    Retient l'année demandée si elle existe, sinon la plus récente antérieure.

    Raises:
        ErreurChargement: Si aucun tarif ne correspond
    """
    region = normaliser_region(region)
    tarifs = charger_tarifs_eau().filter(pl.col("region") == region)
    if distributeur:
        tarifs = tarifs.filter(pl.col("distributeur") == distributeur.upper())
    if annee is not None:
        tarifs = tarifs.filter(pl.col("annee") <= annee)

    candidats = tarifs.sort("annee", descending=True).collect()
    if candidats.is_empty():
        raise ErreurChargement(f"Aucun tarif d'eau pour {region} ({distributeur or 'tous distributeurs'}, {annee})")
    return candidats.row(0, named=True)


def calculer_m3_gratuits(
    habitants: int,
    m3_par_habitant: int = 15,
    max_habitants: int = 5,
) -> int:
    """
    M³ gratuits wallons : 15 m³ par habitant, plafonnés à 5 habitants.

    Example:
        >>> calculer_m3_gratuits(7)
        75
    """
    return min(max(habitants, 0), max_habitants) * m3_par_habitant


def _valeur(tarif: dict, cle: str, defaut: float = 0.0) -> float:
    valeur = tarif.get(cle)
    return defaut if valeur is None else valeur


def _exprs_wallonie(tarif: dict) -> list[pl.Expr]:
    gratuits = pl.min_horizontal(
        pl.col("habitants"), pl.lit(int(_valeur(tarif, "max_habitants_gratuits", 5)))
    ) * int(_valeur(tarif, "m3_gratuits_par_habitant", 15))
    return [
        gratuits.alias("m3_gratuits"),
        pl.max_horizontal(pl.col("m3_consommes") - gratuits, pl.lit(0)).alias("m3_factures"),
        pl.lit(0).alias("m3_tarif_base"),
        pl.lit(0).alias("m3_tarif_confort"),
    ]


def _exprs_flandre(tarif: dict) -> list[pl.Expr]:
    volume_base = (
        int(_valeur(tarif, "m3_base_fixe"))
        + pl.col("habitants") * int(_valeur(tarif, "m3_base_par_habitant"))
    )
    return [
        pl.lit(0).alias("m3_gratuits"),
        pl.col("m3_consommes").alias("m3_factures"),
        pl.min_horizontal(pl.col("m3_consommes"), volume_base).alias("m3_tarif_base"),
        pl.max_horizontal(pl.col("m3_consommes") - volume_base, pl.lit(0)).alias("m3_tarif_confort"),
    ]


def _exprs_bruxelles(tarif: dict) -> list[pl.Expr]:
    return [
        pl.lit(0).alias("m3_gratuits"),
        pl.col("m3_consommes").alias("m3_factures"),
        pl.lit(0).alias("m3_tarif_base"),
        pl.lit(0).alias("m3_tarif_confort"),
    ]


def _exprs_montants(region: str, tarif: dict) -> list[pl.Expr]:
    redevance = _valeur(tarif, "redevance_fixe_annuelle")
    if region == "wallonie":
        return [
            (pl.col("m3_factures") * _valeur(tarif, "cve_distribution")).alias("montant_eau"),
            (pl.col("m3_consommes") * _valeur(tarif, "cve_assainissement")).alias("montant_assainissement"),
            (pl.lit(redevance) / pl.len()).alias("montant_redevance"),
        ]
    if region == "flandre":
        return [
            (
                pl.col("m3_tarif_base") * _valeur(tarif, "tarif_base")
                + pl.col("m3_tarif_confort") * _valeur(tarif, "tarif_confort")
            ).alias("montant_eau"),
            pl.lit(0.0).alias("montant_assainissement"),
            (pl.lit(redevance) / pl.len()).alias("montant_redevance"),
        ]
    # Bruxelles : assainissement inclus dans le tarif unique, redevance par logement
    return [
        (
            pl.col("m3_consommes")
            * (_valeur(tarif, "tarif_unique") + _valeur(tarif, "contribution_fonds_eau"))
        ).alias("montant_eau"),
        pl.lit(0.0).alias("montant_assainissement"),
        pl.lit(redevance).alias("montant_redevance"),
    ]


def calculer_couts_eau(
    consommations: pl.LazyFrame,
    region: str,
    tarif: Optional[dict] = None,
) -> pl.LazyFrame:
    """
    Coût de l'eau par logement selon la tarification régionale.

    Le nombre de logements est le nombre de lignes ; la redevance fixe est
    divisée entre eux en Wallonie et en Flandre, due par logement à Bruxelles.

    Args:
        consommations: LazyFrame (consommation, habitants optionnel)
        region: Région de l'immeuble (libellé libre)
        tarif: Tarif à appliquer (par défaut le plus récent de la région)

    Returns:
        LazyFrame avec m3_consommes, m3_gratuits, m3_factures, m3_tarif_base,
        m3_tarif_confort et les montants eau, assainissement, redevance, TVA, total
    """
    region = normaliser_region(region)
    if tarif is None:
        tarif = tarif_eau(region)

    exprs_volumes = {
        "wallonie": _exprs_wallonie,
        "flandre": _exprs_flandre,
        "bruxelles": _exprs_bruxelles,
    }[region](tarif)

    colonnes = consommations.collect_schema().names()
    habitants = pl.col("habitants") if "habitants" in colonnes else pl.lit(None, dtype=pl.Int64)
    taux_tva = _valeur(tarif, "tva", 6.0) / 100
    montants = ["montant_eau", "montant_assainissement", "montant_redevance", "montant_tva", "montant_total"]

    return (
        consommations
        .with_columns(
            habitants.cast(pl.Int64).fill_null(1).clip(lower_bound=1).alias("habitants"),
            # arrondi au m³, demi-unité vers le haut
            (pl.col("consommation").cast(pl.Float64).fill_null(0.0) + 0.5).floor().cast(pl.Int64).alias("m3_consommes"),
        )
        .with_columns(exprs_volumes)
        .with_columns(_exprs_montants(region, tarif))
        .with_columns(
            (pl.col("montant_eau") + pl.col("montant_assainissement") + pl.col("montant_redevance"))
            .alias("_sous_total")
        )
        .with_columns((pl.col("_sous_total") * taux_tva).alias("montant_tva"))
        .with_columns((pl.col("_sous_total") + pl.col("montant_tva")).alias("montant_total"))
        .with_columns([pl.col(c).round(2) for c in montants])
        .drop("_sous_total")
    )


# =============================================================================
# RÉPARTITION
# =============================================================================

def repartir_pertes(consommations: pl.LazyFrame, pertes: float) -> pl.LazyFrame:
    """
    Répartit des pertes (m³) au prorata des consommations.

    Si la consommation totale est nulle, les pertes sont partagées à parts égales.

    Returns:
        LazyFrame avec part_pertes et consommation_avec_pertes
    """
    total = pl.col("consommation").sum()
    part = (
        pl.when(total > 0)
        .then(pl.col("consommation") / total * pertes)
        .otherwise(pl.lit(pertes) / pl.len())
    )
    return (
        consommations
        .with_columns(part.alias("part_pertes"))
        .with_columns((pl.col("consommation") + pl.col("part_pertes")).alias("consommation_avec_pertes"))
    )


def repartir_eau(
    consommations: pl.LazyFrame,
    proprietaires: pl.LazyFrame,
    mode: str,
    cout_total: float,
    consommation_principale: Optional[float] = None,
) -> pl.LazyFrame:
    """
    Répartit le coût de l'eau d'un immeuble entre les propriétaires.

    Modes :
    - collectif : au prorata des millièmes
    - divisionnaire : consommation privative + part de l'eau commune
      (compteur principal - somme des divisionnaires) au prorata des millièmes
    - individuel : au prorata de la consommation propre

    Sans aucune consommation attribuée, le coût est réparti selon les millièmes.

    Args:
        consommations: LazyFrame (proprietaire_id, consommation), un compteur par ligne
        proprietaires: Propriétaires de l'immeuble
        mode: Mode de comptage
        cout_total: Coût à répartir (€)
        consommation_principale: Index consommé au compteur principal (mode divisionnaire)

    Returns:
        LazyFrame (proprietaire_id, nom, quote_part, consommation_privative,
        eau_commune, consommation_attribuee, montant)
    """
    if mode not in MODES_COMPTAGE:
        raise ErreurValidation("mode", f"mode de comptage inconnu : {mode}")
    if mode == "divisionnaire" and consommation_principale is None:
        raise ErreurValidation("consommation_principale", "requise en mode divisionnaire")

    privatives = (
        consommations
        .group_by(pl.col("proprietaire_id").cast(pl.Utf8))
        .agg(pl.col("consommation").sum().alias("consommation_privative"))
    )

    base = (
        preparer_proprietaires(proprietaires)
        .with_columns(expr_quote_part().alias("quote_part"))
        .join(privatives, on="proprietaire_id", how="left")
        .with_columns(pl.col("consommation_privative").fill_null(0.0).cast(pl.Float64))
    )

    if mode == "collectif":
        eau_commune = pl.lit(consommation_principale or 0.0) * pl.col("quote_part")
        privative = pl.lit(0.0)
    elif mode == "divisionnaire":
        commun = pl.max_horizontal(
            pl.lit(float(consommation_principale)) - pl.col("consommation_privative").sum(),
            pl.lit(0.0),
        )
        eau_commune = commun * pl.col("quote_part")
        privative = pl.col("consommation_privative")
    else:
        eau_commune = pl.lit(0.0)
        privative = pl.col("consommation_privative")

    base = (
        base
        .with_columns(privative.alias("consommation_privative"), eau_commune.alias("eau_commune"))
        .with_columns((pl.col("consommation_privative") + pl.col("eau_commune")).alias("consommation_attribuee"))
    )

    if mode == "collectif":
        poids = pl.col("quote_part")
    else:
        total = pl.col("consommation_attribuee").sum()
        poids = (
            pl.when(total > 0)
            .then(pl.col("consommation_attribuee") / total)
            .otherwise(pl.col("quote_part"))
        )

    logger.debug(f"Répartition de l'eau en mode {mode} pour {cout_total} €")
    return (
        base
        .with_columns((poids * cout_total).alias("montant"))
        .select(
            "proprietaire_id", "nom", "quote_part", "consommation_privative",
            "eau_commune", "consommation_attribuee", "montant",
        )
    )
