"""
Configuration globale pytest et fixtures partagées pour CoproCore.

Ce module centralise les fixtures réutilisables à travers tous les tests :
propriétaires et mouvements minimaux, base DuckDB temporaire, et hooks
pytest pour marquer automatiquement les tests.
"""

import tempfile
from datetime import date
from pathlib import Path
from typing import Generator

import polars as pl
import pytest


# =========================================================================
# FIXTURES - DONNÉES DE TEST MINIMALES
# =========================================================================


@pytest.fixture
def proprietaires_lf() -> pl.LazyFrame:
    """
    Trois propriétaires totalisant 1000 millièmes.

    Dupont 300, Martin 500, Lefèvre 200.
    """
    return pl.LazyFrame({
        "proprietaire_id": ["P1", "P2", "P3"],
        "nom": ["Dupont", "Martin", "Lefèvre"],
        "prenom": ["Jean", "Claire", None],
        "milliemes": [300, 500, 200],
    })


@pytest.fixture
def transactions_lf() -> pl.LazyFrame:
    """
    Mouvements 2024 d'un immeuble, plus un mouvement 2023 à exclure.

    Charges communes 2024 : 1000 € ; frais 2024 : 20 € ;
    versements : Dupont 400 € (id), Martin 250 € (nom), 100 € non attribué.
    """
    return pl.LazyFrame({
        "transaction_id": ["T1", "T2", "T3", "T4", "T5", "T6", "T7"],
        "date_transaction": [
            date(2024, 2, 1), date(2024, 6, 1), None,
            date(2024, 3, 15), date(2024, 4, 2), date(2024, 5, 5), date(2023, 12, 31),
        ],
        "date_comptabilisation": [None, None, date(2024, 9, 30), None, None, None, None],
        "created_at": [None] * 7,
        "montant": [-600.0, -400.0, -20.0, 400.0, 250.0, 100.0, -999.0],
        "type": ["charge", "charge", "charge", "versement", "versement", "versement", "charge"],
        "description": [
            "Nettoyage communs", "Assurance immeuble", "Frais de gestion compte",
            "Provision T1", None, "Virement inconnu", "Chauffage 2023",
        ],
        "nom_contrepartie": ["CleanCo", "AXA", "BELFIUS", "DUPONT JEAN", "MARTIN CLAIRE", "X", "Engie"],
        "communication": [None, None, None, None, "provision appt 2", None, None],
        "proprietaire_id": [None, None, None, "P1", None, None, None],
    }, schema_overrides={"created_at": pl.Datetime("us")})


# =========================================================================
# FIXTURES - CONNEXIONS ET RESSOURCES
# =========================================================================


@pytest.fixture
def temp_duckdb_path() -> Generator[Path, None, None]:
    """
    Chemin de base DuckDB temporaire pour tests d'intégration.

    Scope: function - base vierge pour chaque test, supprimée à la fin.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_coprocore.duckdb"


@pytest.fixture
def duckdb_immeuble(
    temp_duckdb_path: Path,
    proprietaires_lf: pl.LazyFrame,
    transactions_lf: pl.LazyFrame,
) -> Path:
    """
    Base DuckDB contenant l'immeuble IMM1 (propriétaires et mouvements).
    """
    from coprocore.core.loaders.duckdb import (
        enregistrer_proprietaires,
        enregistrer_transactions,
        initialiser_schema,
    )

    initialiser_schema(temp_duckdb_path)
    enregistrer_proprietaires("IMM1", proprietaires_lf.collect(), temp_duckdb_path)
    enregistrer_transactions(
        "IMM1",
        transactions_lf.with_columns(pl.lit(None, dtype=pl.Utf8).alias("categorie")).collect(),
        temp_duckdb_path,
    )
    return temp_duckdb_path


# =========================================================================
# HOOKS PYTEST - PERSONNALISATION COMPORTEMENT
# =========================================================================


def pytest_configure(config):
    """Hook appelé après parsing de la configuration."""
    config.addinivalue_line("markers", "unit: Tests unitaires des expressions et pipelines")
    config.addinivalue_line("markers", "integration: Tests d'intégration (DuckDB, API)")
    config.addinivalue_line("markers", "duckdb: Tests nécessitant DuckDB")


def pytest_collection_modifyitems(config, items):
    """
    Hook appelé après collection des tests.

    Ajoute automatiquement les markers selon l'emplacement des tests.
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if "duckdb" in item.nodeid.lower():
            item.add_marker(pytest.mark.duckdb)


def pytest_report_header(config):
    """Ajoute des informations custom dans le header du rapport."""
    return [
        "CoproCore Test Suite",
        f"Config path: {Path(__file__).parent.parent / 'coprocore' / 'config'}",
    ]
