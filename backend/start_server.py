#!/usr/bin/env python3
"""Clean server startup script"""
import os
import shutil
from pathlib import Path

def clean_cache():
    """Remove all Python cache files"""
    print("🧹 Cleaning __pycache__ directories...")
    for pycache in Path('.').rglob('__pycache__'):
        shutil.rmtree(pycache, ignore_errors=True)
        print(f"   Removed: {pycache}")

if __name__ == '__main__':
    clean_cache()

    print("\n🚀 Starting learnstack server...")
    print("=" * 60)

    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=[".", "learnstack"]
    )
