"""
omicsnet: weighted co-expression network analysis for multi-omics cohorts.

Builds soft-thresholded correlation networks from miRNA, protein and
metabolite matrices, detects co-expression modules on their topological
overlap and relates module eigengenes to clinical traits.
"""

__version__ = "0.1.0"
