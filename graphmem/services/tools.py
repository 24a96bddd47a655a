"""
Tool schemas declared to the reasoning model, one per pipeline stage.
"""

EXTRACT_ENTITIES_TOOL = {
    'name': 'extract_entities',
    'description': 'Extract entities and their types from the text.',
    'parameters': {
        'type': 'object',
        'properties': {
            'entities': {
                'type': 'array',
                'description': 'The list of entities found in the text.',
                'items': {
                    'type': 'object',
                    'properties': {
                        'entity': {
                            'type': 'string',
                            'description': 'The name or identifier of the entity.'
                        },
                        'entity_type': {
                            'type': 'string',
                            'description': 'The type or category of the entity.'
                        }
                    },
                    'required': ['entity', 'entity_type'],
                    'additionalProperties': False
                }
            }
        },
        'required': ['entities'],
        'additionalProperties': False
    }
}

RELATIONS_TOOL = {
    'name': 'establish_relationships',
    'description': 'Establish relationships among the entities based on the provided text.',
    'parameters': {
        'type': 'object',
        'properties': {
            'entities': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'source': {
                            'type': 'string',
                            'description': 'The source entity of the relationship.'
                        },
                        'relationship': {
                            'type': 'string',
                            'description': 'The relationship between the source and destination entities.'
                        },
                        'destination': {
                            'type': 'string',
                            'description': 'The destination entity of the relationship.'
                        }
                    },
                    'required': ['source', 'relationship', 'destination'],
                    'additionalProperties': False
                }
            }
        },
        'required': ['entities'],
        'additionalProperties': False
    }
}

DELETE_MEMORY_TOOL_GRAPH = {
    'name': 'delete_graph_memory',
    'description': 'Delete the relationship between two nodes.',
    'parameters': {
        'type': 'object',
        'properties': {
            'source': {
                'type': 'string',
                'description': 'The identifier of the source node in the relationship.'
            },
            'relationship': {
                'type': 'string',
                'description': 'The existing relationship between the source and destination nodes that needs to be deleted.'
            },
            'destination': {
                'type': 'string',
                'description': 'The identifier of the destination node in the relationship.'
            }
        },
        'required': ['source', 'relationship', 'destination'],
        'additionalProperties': False
    }
}

CLASSIFY_PRIVACY_TOOL = {
    'name': 'classify_privacy',
    'description': 'Mark each relationship as private or shareable.',
    'parameters': {
        'type': 'object',
        'properties': {
            'relations': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'source': {
                            'type': 'string'
                        },
                        'relation': {
                            'type': 'string'
                        },
                        'target': {
                            'type': 'string'
                        },
                        'isPrivate': {
                            'type': 'boolean'
                        }
                    },
                    'required': ['source', 'relation', 'target', 'isPrivate'],
                    'additionalProperties': False
                }
            }
        },
        'required': ['relations'],
        'additionalProperties': False
    }
}

CLASSIFY_FACTS_PRIVACY_TOOL = {
    'name': 'classify_facts_privacy',
    'description': 'Mark each fact as private or shareable.',
    'parameters': {
        'type': 'object',
        'properties': {
            'facts': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'fact': {
                            'type': 'string'
                        },
                        'isPrivate': {
                            'type': 'boolean'
                        }
                    },
                    'required': ['fact', 'isPrivate'],
                    'additionalProperties': False
                }
            }
        },
        'required': ['facts'],
        'additionalProperties': False
    }
}
