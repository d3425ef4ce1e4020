"""
CoproCore - Décomptes annuels de copropriété.

Calcul des décomptes par propriétaire (charges communes, frais, provisions),
report à nouveau entre exercices, import de relevés bancaires et
répartition des consommations d'eau.
"""

__version__ = "0.1.0"
