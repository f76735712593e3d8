"""Modulr Wallet Meta information.
   Modulr Wallet keeps signing keys sealed at rest and builds
   signed transfer transactions for a Modulr node.
"""
__title__ = 'modulr_wallet'
__description__ = (
   'Modulr Wallet keeps signing keys sealed at rest and builds '
   'signed transfer transactions for a Modulr node.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 Modulr Wallet Authors'
__author__ = 'Modulr Wallet Authors'
__author_email__ = 'dev@modulr.network'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/modulr-network/modulr-wallet'
