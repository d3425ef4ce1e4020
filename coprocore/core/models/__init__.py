"""
Modèles Pandera (Polars) pour les données de copropriété.

Ces modèles valident les données à la frontière du moteur de décompte :
propriétaires, mouvements bancaires, soldes d'exercice et relevés d'eau.
"""

from .proprietaire import Proprietaire
from .transaction import Transaction
from .solde_exercice import SoldeExercice
from .releve_compteur import RelevéCompteur
from .decompte_annuel import DecompteAnnuelModele

__all__ = [
    "Proprietaire",
    "Transaction",
    "SoldeExercice",
    "RelevéCompteur",
    "DecompteAnnuelModele",
]
