"""
Wardrobe Image Pipeline

Four sequential stages per uploaded garment photo:
1. Background removal - external tool run as an isolated process
2. Optimization - fit inside 1200x1200, lossless PNG
3. Thumbnail - 300x300 cover crop, WEBP
4. Color extraction - dominant color and palette (never fatal)
"""
