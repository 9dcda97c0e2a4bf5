"""Stateless analysis services returning (AnnData, stats, AnalysisStep) tuples."""
