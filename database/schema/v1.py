"""Schema v1 - Initial marketplace projection schema.

This version includes tables for:
- Indexing progress per stream
- Listings and offers from both trading protocols
- The append-only activity log
- Anomalies recorded for operator review

The unique constraints on natural keys and on activity (tx_hash, type) are
what make event application idempotent. Do not drop them.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'indexed_blocks',
            'columns': [
                {'name': 'stream_id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'block_number', 'type': 'INT8', 'nullable': False},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'contract_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'blockchain_listing_id', 'type': 'TEXT', 'unique': True},
                {'name': 'order_hash', 'type': 'TEXT', 'unique': True},
                {'name': 'seller_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_address', 'type': 'TEXT'},
                {'name': 'nft_contract', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'DECIMAL'},
                {'name': 'currency', 'type': 'TEXT'},
                {'name': 'expiry', 'type': 'TIMESTAMPTZ'},
                {'name': 'metadata_uri', 'type': 'TEXT'},
                {'name': 'order_parameters', 'type': 'JSONB'},
                {'name': 'counter', 'type': 'DECIMAL'},
                {'name': 'tx_hash', 'type': 'TEXT'},
                {'name': 'sale_tx_hash', 'type': 'TEXT'},
                {'name': 'cancel_tx_hash', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'sold_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'cancelled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'last_reconciled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                {'name': 'listings_single_terminal', 'expression': 'sold_at IS NULL OR cancelled_at IS NULL'},
                {'name': 'listings_contract_type', 'expression': "contract_type IN ('exchange', 'seaport')"}
            ],
            'indexes': [
                {'name': 'idx_listings_seller', 'columns': ['seller_address']},
                {'name': 'idx_listings_token', 'columns': ['nft_contract', 'token_id']},
                {
                    'name': 'idx_listings_open',
                    'columns': ['last_reconciled_at'],
                    'where': 'sold_at IS NULL AND cancelled_at IS NULL'
                }
            ]
        },
        {
            'name': 'offers',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'contract_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'blockchain_offer_id', 'type': 'TEXT', 'unique': True},
                {'name': 'order_hash', 'type': 'TEXT', 'unique': True},
                {'name': 'buyer_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_address', 'type': 'TEXT'},
                {'name': 'nft_contract', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL'},
                {'name': 'currency', 'type': 'TEXT'},
                {'name': 'expiry', 'type': 'TIMESTAMPTZ'},
                {'name': 'order_parameters', 'type': 'JSONB'},
                {'name': 'counter', 'type': 'DECIMAL'},
                {'name': 'tx_hash', 'type': 'TEXT'},
                {'name': 'accept_tx_hash', 'type': 'TEXT'},
                {'name': 'cancel_tx_hash', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'accepted_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'cancelled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'last_reconciled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                {'name': 'offers_single_terminal', 'expression': 'accepted_at IS NULL OR cancelled_at IS NULL'},
                {'name': 'offers_contract_type', 'expression': "contract_type IN ('exchange', 'seaport')"}
            ],
            'indexes': [
                {'name': 'idx_offers_buyer', 'columns': ['buyer_address']},
                {'name': 'idx_offers_token', 'columns': ['nft_contract', 'token_id']},
                {
                    'name': 'idx_offers_open',
                    'columns': ['last_reconciled_at'],
                    'where': 'accepted_at IS NULL AND cancelled_at IS NULL'
                }
            ]
        },
        {
            'name': 'activity',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'type', 'type': 'TEXT', 'nullable': False},
                {'name': 'contract_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'actor_address', 'type': 'TEXT'},
                {'name': 'nft_contract', 'type': 'TEXT'},
                {'name': 'token_id', 'type': 'TEXT'},
                {'name': 'price', 'type': 'DECIMAL'},
                {'name': 'metadata', 'type': 'JSONB'},
                {'name': 'tx_hash', 'type': 'TEXT', 'nullable': False},
                {'name': 'block_number', 'type': 'INT8'},
                {'name': 'log_index', 'type': 'INT8'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'unique': [
                ['tx_hash', 'type']
            ],
            'indexes': [
                {'name': 'idx_activity_token', 'columns': ['nft_contract', 'token_id']},
                {'name': 'idx_activity_actor', 'columns': ['actor_address']}
            ]
        },
        {
            'name': 'anomalies',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'dedup_key', 'type': 'TEXT', 'unique': True},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'contract_type', 'type': 'TEXT'},
                {'name': 'natural_key', 'type': 'TEXT'},
                {'name': 'tx_hash', 'type': 'TEXT'},
                {'name': 'block_number', 'type': 'INT8'},
                {'name': 'log_index', 'type': 'INT8'},
                {'name': 'detail', 'type': 'JSONB'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'resolved_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_anomalies_kind', 'columns': ['kind']},
                {'name': 'idx_anomalies_open', 'columns': ['created_at'], 'where': 'resolved_at IS NULL'}
            ]
        }
    ]
}
