"""
API REST CoproCore.

Expose les décomptes annuels, la situation des exercices, la clôture avec
confirmation obligatoire, l'analyse des relevés bancaires et la validation
des relevés d'eau.
"""

from datetime import date
from pathlib import Path
from typing import List, Optional

import pandera.errors
import polars as pl
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from coprocore.core.configuration import configurer_logging
from coprocore.core.erreurs import (
    ErreurChargement,
    ErreurValidation,
    PreconditionEchouee,
    ProprietaireIntrouvable,
    TransitionInterdite,
)
from coprocore.core.loaders.duckdb import (
    DuckDBConfig,
    charger_donnees_immeuble,
    charger_exercice,
    enregistrer_exercice,
    enregistrer_exercices,
)
from coprocore.core.pipelines.decompte import (
    calculer_decompte_proprietaire,
    calculer_decomptes,
    calculer_totaux_immeuble,
    resume_immeuble,
)
from coprocore.core.pipelines.eau import valider_releves
from coprocore.core.pipelines.report_a_nouveau import (
    cloturer_exercice,
    recalculer_ran,
    situation_globale,
)
from coprocore.core.utils.formatage import formater_decompte
from coprocore.inputs.releves_bancaires import analyser_releve

configurer_logging()

app = FastAPI(
    title="CoproCore API",
    version="0.1.0",
    description="Décomptes annuels de copropriété et report à nouveau"
)


class DemandeCloture(BaseModel):
    confirmation: str
    notes_cloture: Optional[str] = None
    date_ag_approbation: Optional[date] = None
    pv_ag_reference: Optional[str] = None


class DemandeAnalyseReleve(BaseModel):
    contenu: str
    immeuble_id: Optional[str] = None


class ReleveEau(BaseModel):
    compteur_id: str
    index_precedent: Optional[float] = None
    index_actuel: Optional[float] = None


def get_database_path() -> Path:
    return DuckDBConfig().database_path


def _erreur_http(e: Exception) -> HTTPException:
    """Traduit une erreur métier en réponse HTTP."""
    if isinstance(e, ProprietaireIntrouvable):
        return HTTPException(404, str(e))
    if isinstance(e, (ErreurValidation, pandera.errors.SchemaError, pandera.errors.SchemaErrors)):
        return HTTPException(422, str(e))
    if isinstance(e, TransitionInterdite):
        return HTTPException(409, str(e))
    if isinstance(e, PreconditionEchouee):
        return HTTPException(412, str(e))
    if isinstance(e, ErreurChargement):
        return HTTPException(503, f"Données inaccessibles : {e}")
    return HTTPException(500, f"Erreur interne : {e}")


def _ouverture(immeuble_id: str, annee: int, db: Path):
    """Soldes de début et ajustements d'une année, depuis les exercices enregistrés."""
    precedent = charger_exercice(immeuble_id, annee - 1, db)
    courant = charger_exercice(immeuble_id, annee, db)

    soldes_debut = None
    if precedent is not None and precedent.est_fige:
        soldes_debut = precedent.soldes.select("proprietaire_id", pl.col("solde_fin").alias("solde_debut"))

    ajustements = None
    if courant is not None:
        ajustements = courant.soldes.select(
            "proprietaire_id", pl.col("total_ajustements").alias("ajustements")
        )
    return soldes_debut, ajustements


@app.get("/")
async def root():
    """Présente l'API et des exemples d'utilisation."""
    return {
        "message": "CoproCore API - Décomptes de copropriété",
        "examples": {
            "decomptes": "/immeubles/IMM1/decomptes/2024",
            "decompte_proprietaire": "/immeubles/IMM1/decomptes/2024/P1",
            "situation": "/immeubles/IMM1/exercices/2024/situation",
            "cloture": "POST /immeubles/IMM1/exercices/2024/cloture {\"confirmation\": \"CLOTURER 2024\"}",
        },
        "docs": "/docs",
    }


@app.get("/health")
async def health(db: Path = Depends(get_database_path)):
    """Endpoint de vérification de santé de l'API."""
    return {
        "status": "ok",
        "database": str(db),
        "database_exists": db.exists(),
    }


@app.get("/immeubles/{immeuble_id}/decomptes/{annee}")
def get_decomptes(immeuble_id: str, annee: int, db: Path = Depends(get_database_path)):
    """Décomptes annuels de tous les propriétaires d'un immeuble."""
    try:
        transactions, proprietaires = charger_donnees_immeuble(immeuble_id, db)
        soldes_debut, ajustements = _ouverture(immeuble_id, annee, db)
        decomptes = calculer_decomptes(
            transactions, proprietaires, annee, soldes_debut, ajustements
        ).collect()
        totaux = calculer_totaux_immeuble(transactions, annee)
    except Exception as e:
        raise _erreur_http(e)

    return {
        "immeuble_id": immeuble_id,
        "annee": annee,
        "totaux": totaux,
        "resume": resume_immeuble(decomptes, totaux),
        "decomptes": decomptes.to_dicts(),
    }


@app.get("/immeubles/{immeuble_id}/decomptes/{annee}/{proprietaire_id}")
def get_decompte_proprietaire(
    immeuble_id: str,
    annee: int,
    proprietaire_id: str,
    db: Path = Depends(get_database_path),
):
    """Décompte annuel d'un propriétaire, avec sa version affichable."""
    try:
        transactions, proprietaires = charger_donnees_immeuble(immeuble_id, db)
        soldes_debut, ajustements = _ouverture(immeuble_id, annee, db)

        solde_debut = 0.0
        if soldes_debut is not None:
            ligne = soldes_debut.filter(pl.col("proprietaire_id") == proprietaire_id)
            solde_debut = ligne["solde_debut"][0] if ligne.height else 0.0
        ajustement = 0.0
        if ajustements is not None:
            ligne = ajustements.filter(pl.col("proprietaire_id") == proprietaire_id)
            ajustement = ligne["ajustements"][0] if ligne.height else 0.0

        decompte = calculer_decompte_proprietaire(
            transactions, proprietaires, annee, proprietaire_id, solde_debut, ajustement
        )
    except Exception as e:
        raise _erreur_http(e)

    return {**decompte.vers_dict(), "affichage": formater_decompte(decompte)}


@app.get("/immeubles/{immeuble_id}/exercices/{annee}/situation")
def get_situation(immeuble_id: str, annee: int, db: Path = Depends(get_database_path)):
    """Situation globale d'un exercice enregistré."""
    try:
        exercice = charger_exercice(immeuble_id, annee, db)
    except Exception as e:
        raise _erreur_http(e)
    if exercice is None:
        raise HTTPException(404, f"Exercice {annee} introuvable pour l'immeuble {immeuble_id}")
    return situation_globale(exercice)


@app.post("/immeubles/{immeuble_id}/exercices/{annee}/cloture")
def post_cloture(
    immeuble_id: str,
    annee: int,
    demande: DemandeCloture,
    db: Path = Depends(get_database_path),
):
    """
    Clôture un exercice.

    La confirmation doit valoir exactement "CLOTURER <annee>" ; sinon 412.
    Un exercice déjà clôturé ou archivé renvoie 409.
    """
    try:
        exercice = charger_exercice(immeuble_id, annee, db)
        if exercice is None:
            raise HTTPException(404, f"Exercice {annee} introuvable pour l'immeuble {immeuble_id}")

        transactions, proprietaires = charger_donnees_immeuble(immeuble_id, db)
        suivant = charger_exercice(immeuble_id, annee + 1, db)

        cloture, suivant = cloturer_exercice(
            exercice, transactions, proprietaires, demande.confirmation,
            exercice_suivant=suivant,
            notes_cloture=demande.notes_cloture,
            date_ag_approbation=demande.date_ag_approbation,
            pv_ag_reference=demande.pv_ag_reference,
        )
        enregistrer_exercices([cloture, suivant], db)
    except HTTPException:
        raise
    except Exception as e:
        raise _erreur_http(e)

    return {
        "exercice": situation_globale(cloture),
        "exercice_suivant": situation_globale(suivant),
    }


@app.post("/immeubles/{immeuble_id}/exercices/{annee}/recalcul-ran")
def post_recalcul_ran(immeuble_id: str, annee: int, db: Path = Depends(get_database_path)):
    """Recalcule les soldes de début depuis l'exercice précédent clôturé."""
    try:
        exercice = charger_exercice(immeuble_id, annee, db)
        if exercice is None:
            raise HTTPException(404, f"Exercice {annee} introuvable pour l'immeuble {immeuble_id}")
        precedent = charger_exercice(immeuble_id, annee - 1, db)
        exercice = recalculer_ran(exercice, precedent)
        enregistrer_exercice(exercice, db)
    except HTTPException:
        raise
    except Exception as e:
        raise _erreur_http(e)

    return situation_globale(exercice)


@app.post("/imports/analyse")
def post_analyse_releve(demande: DemandeAnalyseReleve, db: Path = Depends(get_database_path)):
    """Analyse un relevé bancaire CSV sans l'enregistrer."""
    try:
        existantes, proprietaires = None, None
        if demande.immeuble_id:
            existantes, proprietaires = charger_donnees_immeuble(demande.immeuble_id, db)
        rapport = analyser_releve(demande.contenu, existantes, proprietaires=proprietaires)
    except Exception as e:
        raise _erreur_http(e)

    return {
        "format": rapport.format,
        "nb_lignes": rapport.nb_lignes,
        "nb_valides": rapport.nb_valides,
        "nb_invalides": rapport.nb_invalides,
        "nb_doublons": rapport.nb_doublons,
        "nb_reconnues": rapport.nb_reconnues,
        "lignes": rapport.lignes.to_dicts(),
        "transactions": rapport.transactions.to_dicts(),
    }


@app.post("/eau/releves/validation")
def post_validation_releves(releves: List[ReleveEau]):
    """Valide des relevés d'eau : consommation, erreurs et anomalies."""
    if not releves:
        return {"releves": [], "nb_invalides": 0, "nb_anomalies": 0}

    df = pl.LazyFrame(
        [r.model_dump() for r in releves],
        schema={"compteur_id": pl.Utf8, "index_precedent": pl.Float64, "index_actuel": pl.Float64},
    )
    resultat = valider_releves(df).collect()
    return {
        "releves": resultat.to_dicts(),
        "nb_invalides": resultat.filter(~pl.col("valide")).height,
        "nb_anomalies": resultat.filter(pl.col("anomalie")).height,
    }
