"""
Chargeur DuckDB pour le moteur de décompte CoproCore.

Ce module fournit l'interface de données consommée par le moteur :
- transactions(), proprietaires(), exercices(), soldes_exercices() : query builders
- charger_donnees_immeuble(), charger_exercice(), charger_exercices() : lecture
- enregistrer_exercice(), enregistrer_exercices(), enregistrer_transactions(),
  enregistrer_proprietaires() : écriture

Les données lues sont validées avec les modèles Pandera sur un échantillon.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import duckdb
import polars as pl

from coprocore.core.erreurs import ErreurChargement
from coprocore.core.models.proprietaire import Proprietaire
from coprocore.core.models.transaction import Transaction
from coprocore.core.pipelines.report_a_nouveau import Exercice, valider_soldes

logger = logging.getLogger(__name__)

Chemin = Union[str, Path, None]


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS proprietaires (
    immeuble_id VARCHAR NOT NULL,
    proprietaire_id VARCHAR NOT NULL,
    nom VARCHAR NOT NULL,
    prenom VARCHAR,
    email VARCHAR,
    milliemes INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS transactions (
    immeuble_id VARCHAR NOT NULL,
    transaction_id VARCHAR NOT NULL,
    date_transaction DATE,
    date_comptabilisation DATE,
    created_at TIMESTAMP,
    montant DOUBLE NOT NULL,
    type VARCHAR NOT NULL,
    description VARCHAR,
    nom_contrepartie VARCHAR,
    communication VARCHAR,
    categorie VARCHAR,
    proprietaire_id VARCHAR
);
CREATE TABLE IF NOT EXISTS exercices (
    immeuble_id VARCHAR NOT NULL,
    annee INTEGER NOT NULL,
    date_debut DATE NOT NULL,
    date_fin DATE NOT NULL,
    statut VARCHAR NOT NULL,
    date_cloture TIMESTAMP,
    notes_cloture VARCHAR,
    date_ag_approbation DATE,
    pv_ag_reference VARCHAR
);
CREATE TABLE IF NOT EXISTS soldes_exercices (
    immeuble_id VARCHAR NOT NULL,
    annee INTEGER NOT NULL,
    proprietaire_id VARCHAR NOT NULL,
    solde_debut DOUBLE NOT NULL,
    total_provisions DOUBLE NOT NULL,
    total_charges DOUBLE NOT NULL,
    total_ajustements DOUBLE NOT NULL,
    solde_fin DOUBLE NOT NULL,
    cotisation_reserve DOUBLE NOT NULL DEFAULT 0
);
ALTER TABLE exercices ADD COLUMN IF NOT EXISTS date_cloture TIMESTAMP;
ALTER TABLE exercices ADD COLUMN IF NOT EXISTS notes_cloture VARCHAR;
ALTER TABLE exercices ADD COLUMN IF NOT EXISTS date_ag_approbation DATE;
ALTER TABLE exercices ADD COLUMN IF NOT EXISTS pv_ag_reference VARCHAR;
ALTER TABLE soldes_exercices ADD COLUMN IF NOT EXISTS cotisation_reserve DOUBLE DEFAULT 0;
"""

BASE_QUERY_TRANSACTIONS = """
SELECT
    immeuble_id,
    transaction_id,
    date_transaction,
    date_comptabilisation,
    created_at,
    CAST(montant AS DOUBLE) as montant,
    type,
    description,
    nom_contrepartie,
    communication,
    categorie,
    proprietaire_id
FROM transactions
"""

BASE_QUERY_PROPRIETAIRES = """
SELECT
    immeuble_id,
    proprietaire_id,
    nom,
    prenom,
    email,
    CAST(milliemes AS BIGINT) as milliemes
FROM proprietaires
"""

BASE_QUERY_EXERCICES = """
SELECT
    immeuble_id,
    annee,
    date_debut,
    date_fin,
    statut,
    date_cloture,
    notes_cloture,
    date_ag_approbation,
    pv_ag_reference
FROM exercices
"""

BASE_QUERY_SOLDES = """
SELECT
    immeuble_id,
    annee,
    proprietaire_id,
    solde_debut,
    total_provisions,
    total_charges,
    total_ajustements,
    solde_fin,
    COALESCE(cotisation_reserve, 0) as cotisation_reserve
FROM soldes_exercices
"""


class DuckDBConfig:
    """Configuration pour les connexions DuckDB."""

    def __init__(self, database_path: Chemin = None):
        """
        Args:
            database_path: Chemin vers la base DuckDB. Si None, variable
                d'environnement COPROCORE_DUCKDB, sinon coprocore.duckdb.
        """
        if database_path is None:
            database_path = os.environ.get("COPROCORE_DUCKDB", "coprocore.duckdb")
        self.database_path = Path(database_path)


@contextmanager
def duckdb_connection(database_path: Union[str, Path], read_only: bool = True):
    """
    Context manager pour connexions DuckDB.

    Args:
        database_path: Chemin vers la base DuckDB
        read_only: Ouvre la base en lecture seule

    Yields:
        duckdb.DuckDBPyConnection: Connexion active
    """
    conn = None
    try:
        conn = duckdb.connect(str(database_path), read_only=read_only)
        yield conn
    finally:
        if conn:
            conn.close()


def initialiser_schema(database_path: Chemin = None) -> Path:
    """Crée les tables si elles n'existent pas. Retourne le chemin de la base."""
    config = DuckDBConfig(database_path)
    with duckdb_connection(config.database_path, read_only=False) as conn:
        conn.execute(SCHEMA_SQL)
    logger.info(f"Schéma CoproCore initialisé dans {config.database_path}")
    return config.database_path


def _formater_condition(colonne: str, condition: Any) -> str:
    """
    Clause WHERE pour un filtre {colonne: condition}.

    Examples:
        >>> _formater_condition("annee", ">= 2023")
        'annee >= 2023'
        >>> _formater_condition("immeuble_id", ["A", "B"])
        "immeuble_id IN ('A', 'B')"
    """
    if isinstance(condition, (list, tuple)):
        valeurs = ", ".join("'" + str(v).replace("'", "''") + "'" for v in condition)
        return f"{colonne} IN ({valeurs})"
    if isinstance(condition, str) and condition.lstrip().startswith((">=", "<=", ">", "<", "=")):
        return f"{colonne} {condition}"
    if isinstance(condition, (int, float)):
        return f"{colonne} = {condition}"
    return f"{colonne} = '" + str(condition).replace("'", "''") + "'"


@dataclass(frozen=True)
class DuckDBQuery:
    """
    Builder immutable pour construire et exécuter des requêtes DuckDB.

    Chaque méthode retourne une nouvelle instance ; la requête n'est exécutée
    qu'au moment de lazy() ou collect().

    Example:
        >>> transactions().filter({"immeuble_id": "IMM1"}).limit(100).collect()
    """

    base_query: str
    transform_func: Callable[[pl.LazyFrame], pl.LazyFrame]
    validator_class: Optional[type] = None
    database_path: Chemin = None
    filters: Dict[str, Any] = field(default_factory=dict)
    conditions: Tuple[str, ...] = ()
    limit_value: Optional[int] = None
    valider: bool = True

    def filter(self, filters: Dict[str, Any]) -> 'DuckDBQuery':
        """
        Example:
            >>> query.filter({"immeuble_id": "IMM1", "annee": ">= 2023"})
        """
        return replace(self, filters={**self.filters, **filters})

    def where(self, condition: str) -> 'DuckDBQuery':
        return replace(self, conditions=self.conditions + (condition,))

    def limit(self, count: int) -> 'DuckDBQuery':
        return replace(self, limit_value=count)

    def validate(self, enable: bool = True) -> 'DuckDBQuery':
        return replace(self, valider=enable)

    def _build_final_query(self) -> str:
        query = self.base_query
        clauses = [_formater_condition(c, v) for c, v in self.filters.items()] + list(self.conditions)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if self.limit_value:
            query += f" LIMIT {self.limit_value}"
        return query

    def lazy(self) -> pl.LazyFrame:
        """
        Exécute la requête et retourne un LazyFrame Polars.

        Raises:
            ErreurChargement: Base absente ou requête en échec
        """
        config = DuckDBConfig(self.database_path)
        if not config.database_path.exists():
            raise ErreurChargement(f"Base DuckDB non trouvée : {config.database_path}")

        final_query = self._build_final_query()
        logger.debug(f"Requête DuckDB : {final_query}")

        try:
            with duckdb_connection(config.database_path) as conn:
                lazy_frame = pl.read_database(query=final_query, connection=conn).lazy()
        except duckdb.Error as e:
            raise ErreurChargement(f"Requête DuckDB en échec : {e}") from e

        lazy_frame = self.transform_func(lazy_frame)

        if self.valider and self.validator_class is not None:
            sample_df = lazy_frame.limit(100).collect()
            self.validator_class.validate(sample_df)

        return lazy_frame

    def collect(self) -> pl.DataFrame:
        return self.lazy().collect()


# ============================================================
# Transformations
# ============================================================

def _transform_transactions(lf: pl.LazyFrame) -> pl.LazyFrame:
    return lf.with_columns(
        pl.col("date_transaction").cast(pl.Date),
        pl.col("date_comptabilisation").cast(pl.Date),
        pl.col("created_at").cast(pl.Datetime("us")),
        pl.col("proprietaire_id").cast(pl.Utf8),
    )


def _transform_proprietaires(lf: pl.LazyFrame) -> pl.LazyFrame:
    return lf.with_columns(pl.col("milliemes").cast(pl.Int64).fill_null(0))


def _transform_exercices(lf: pl.LazyFrame) -> pl.LazyFrame:
    return lf.with_columns(
        pl.col("annee").cast(pl.Int32),
        pl.col("date_debut").cast(pl.Date),
        pl.col("date_fin").cast(pl.Date),
        pl.col("date_cloture").cast(pl.Datetime("us")),
        pl.col("date_ag_approbation").cast(pl.Date),
    )


# ============================================================
# API fluide - Fonctions factory
# ============================================================

def transactions(database_path: Chemin = None) -> DuckDBQuery:
    """
    Crée un DuckDBQuery pour les mouvements bancaires.

    Example:
        >>> df = transactions().filter({"immeuble_id": "IMM1"}).collect()
    """
    return DuckDBQuery(
        base_query=BASE_QUERY_TRANSACTIONS,
        transform_func=_transform_transactions,
        validator_class=Transaction,
        database_path=database_path,
    )


def proprietaires(database_path: Chemin = None) -> DuckDBQuery:
    return DuckDBQuery(
        base_query=BASE_QUERY_PROPRIETAIRES,
        transform_func=_transform_proprietaires,
        validator_class=Proprietaire,
        database_path=database_path,
    )


def exercices(database_path: Chemin = None) -> DuckDBQuery:
    return DuckDBQuery(
        base_query=BASE_QUERY_EXERCICES,
        transform_func=_transform_exercices,
        database_path=database_path,
    )


def soldes_exercices(database_path: Chemin = None) -> DuckDBQuery:
    return DuckDBQuery(
        base_query=BASE_QUERY_SOLDES,
        transform_func=lambda lf: lf,
        database_path=database_path,
    )


# ============================================================
# Lecture métier
# ============================================================

def charger_donnees_immeuble(
    immeuble_id: str,
    database_path: Chemin = None,
) -> Tuple[pl.LazyFrame, pl.LazyFrame]:
    """
    Charge les mouvements et les propriétaires d'un immeuble.

    Returns:
        (transactions, proprietaires)

    Raises:
        ErreurChargement: Si l'immeuble n'a aucun propriétaire
    """
    filtre = {"immeuble_id": str(immeuble_id)}
    df_proprietaires = proprietaires(database_path).filter(filtre).collect()
    if df_proprietaires.is_empty():
        raise ErreurChargement(f"Aucun propriétaire pour l'immeuble {immeuble_id}")

    df_transactions = transactions(database_path).filter(filtre).collect()
    logger.info(
        f"Immeuble {immeuble_id} : {df_transactions.height} mouvement(s), "
        f"{df_proprietaires.height} propriétaire(s)"
    )
    return df_transactions.lazy(), df_proprietaires.lazy()


def charger_exercices(immeuble_id: str, database_path: Chemin = None) -> List[Exercice]:
    """Tous les exercices d'un immeuble, triés par année."""
    filtre = {"immeuble_id": str(immeuble_id)}
    lignes = exercices(database_path).filter(filtre).collect().sort("annee")
    soldes = soldes_exercices(database_path).filter(filtre).collect()

    resultat = []
    for ligne in lignes.iter_rows(named=True):
        soldes_annee = soldes.filter(pl.col("annee") == ligne["annee"])
        resultat.append(Exercice(
            immeuble_id=ligne["immeuble_id"],
            annee=int(ligne["annee"]),
            date_debut=ligne["date_debut"],
            date_fin=ligne["date_fin"],
            statut=ligne["statut"],
            soldes=valider_soldes(soldes_annee),
            date_cloture=ligne["date_cloture"],
            notes_cloture=ligne["notes_cloture"],
            date_ag_approbation=ligne["date_ag_approbation"],
            pv_ag_reference=ligne["pv_ag_reference"],
        ))
    return resultat


def charger_exercice(immeuble_id: str, annee: int, database_path: Chemin = None) -> Optional[Exercice]:
    return next((e for e in charger_exercices(immeuble_id, database_path) if e.annee == annee), None)


# ============================================================
# Écriture
# ============================================================

def _ecrire(database_path: Chemin, instructions: Callable[[duckdb.DuckDBPyConnection], None]) -> None:
    config = DuckDBConfig(database_path)
    try:
        with duckdb_connection(config.database_path, read_only=False) as conn:
            conn.execute(SCHEMA_SQL)
            conn.execute("BEGIN TRANSACTION")
            try:
                instructions(conn)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
    except duckdb.Error as e:
        raise ErreurChargement(f"Écriture DuckDB en échec : {e}") from e


COLONNES_EXERCICES = [
    "immeuble_id", "annee", "date_debut", "date_fin", "statut",
    "date_cloture", "notes_cloture", "date_ag_approbation", "pv_ag_reference",
]

COLONNES_SOLDES_EXERCICES = [
    "immeuble_id", "annee", "proprietaire_id", "solde_debut", "total_provisions",
    "total_charges", "total_ajustements", "solde_fin", "cotisation_reserve",
]


def _inserer_exercice(conn: duckdb.DuckDBPyConnection, exercice: Exercice) -> None:
    cle = [exercice.immeuble_id, exercice.annee]
    conn.execute("DELETE FROM exercices WHERE immeuble_id = ? AND annee = ?", cle)
    conn.execute("DELETE FROM soldes_exercices WHERE immeuble_id = ? AND annee = ?", cle)
    conn.execute(
        f"INSERT INTO exercices ({', '.join(COLONNES_EXERCICES)}) "
        f"VALUES ({', '.join(['?'] * len(COLONNES_EXERCICES))})",
        cle + [
            exercice.date_debut, exercice.date_fin, exercice.statut,
            exercice.date_cloture, exercice.notes_cloture,
            exercice.date_ag_approbation, exercice.pv_ag_reference,
        ],
    )
    lignes = [cle + list(row) for row in exercice.soldes.select(COLONNES_SOLDES_EXERCICES[2:]).iter_rows()]
    if lignes:
        conn.executemany(
            f"INSERT INTO soldes_exercices ({', '.join(COLONNES_SOLDES_EXERCICES)}) "
            f"VALUES ({', '.join(['?'] * len(COLONNES_SOLDES_EXERCICES))})",
            lignes,
        )


def enregistrer_exercices(exercices_a_ecrire: Sequence[Exercice], database_path: Chemin = None) -> None:
    """
    Enregistre (remplace) plusieurs exercices et leurs soldes en une seule transaction.

    Si l'écriture d'un exercice échoue, aucun n'est enregistré : une clôture et
    le report sur l'exercice suivant sont persistés ensemble ou pas du tout.
    """
    def instructions(conn):
        for exercice in exercices_a_ecrire:
            _inserer_exercice(conn, exercice)

    _ecrire(database_path, instructions)
    for exercice in exercices_a_ecrire:
        logger.info(
            f"Exercice {exercice.annee} ({exercice.statut}) enregistré pour l'immeuble {exercice.immeuble_id}"
        )


def enregistrer_exercice(exercice: Exercice, database_path: Chemin = None) -> None:
    """Enregistre (remplace) un exercice et ses soldes."""
    enregistrer_exercices([exercice], database_path)


def enregistrer_proprietaires(immeuble_id: str, df: pl.DataFrame, database_path: Chemin = None) -> None:
    """Remplace les propriétaires d'un immeuble."""
    df = Proprietaire.validate(df)
    colonnes = ["proprietaire_id", "nom", "prenom", "email", "milliemes"]
    df = df.with_columns([pl.lit(None, dtype=pl.Utf8).alias(c) for c in colonnes if c not in df.columns])

    def instructions(conn):
        conn.execute("DELETE FROM proprietaires WHERE immeuble_id = ?", [str(immeuble_id)])
        lignes = [[str(immeuble_id)] + list(row) for row in df.select(colonnes).iter_rows()]
        if lignes:
            conn.executemany("INSERT INTO proprietaires VALUES (?, ?, ?, ?, ?, ?)", lignes)

    _ecrire(database_path, instructions)


def enregistrer_transactions(immeuble_id: str, df: pl.DataFrame, database_path: Chemin = None) -> int:
    """
    Ajoute des transactions à un immeuble.

    Returns:
        Nombre de transactions insérées
    """
    colonnes = list(Transaction.to_schema().columns)
    df = Transaction.validate(df.select(colonnes))

    def instructions(conn):
        lignes = [[str(immeuble_id)] + list(row) for row in df.iter_rows()]
        if lignes:
            conn.executemany(
                f"INSERT INTO transactions ({', '.join(['immeuble_id'] + colonnes)}) "
                f"VALUES ({', '.join(['?'] * (len(colonnes) + 1))})",
                lignes,
            )

    _ecrire(database_path, instructions)
    logger.info(f"{df.height} transaction(s) enregistrée(s) pour l'immeuble {immeuble_id}")
    return df.height
