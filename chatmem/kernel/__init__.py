"""
Retrieval kernel: stores, keyword extraction, embeddings and hybrid search
"""
