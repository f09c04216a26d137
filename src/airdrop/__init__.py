"""Pay every holder of an NFT collection in batched XRPL transactions."""

__version__ = "0.1.0"
