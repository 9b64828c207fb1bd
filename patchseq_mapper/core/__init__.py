"""Core computational modules for PatchSeq-Mapper.

This package contains the main analysis engines:
- datasets: Dataset wrapper and cell metadata schema
- genes: Gene filtering, beta-score specificity, marker selection
- integration: Shared embedding, anchors, weighting, label transfer
"""
