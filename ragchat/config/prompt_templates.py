"""
RagChat - Prompt Templates & Fixed Markers
===========================================
Centralised prompt management for the RAG engine.  All prompts live here
so they can be versioned and reviewed independently of application logic.

Templates use ``str.format`` placeholders.

Exports
-------
QUERY_COMPRESSION_PROMPT, QUERY_EXPANSION_PROMPT,
AUGMENTED_PROMPT_TEMPLATE, CONTEXT_ENTRY_TEMPLATE,
NO_CONTEXT_MARKER.
"""

# ══════════════════════════════════════════════════════════════════════
#  QUERY TRANSFORMATION
# ══════════════════════════════════════════════════════════════════════

QUERY_COMPRESSION_PROMPT: str = """Below is a conversation between a User and an AI assistant, followed by a new question from the User.
Work out everything the new question refers to (names, terms, earlier topics) and rewrite it as one clear, concise, standalone question that makes sense without the conversation.

Conversation:
{history}

New question: {query}

Reply with the rewritten question only. Do not add any prefix, label or explanation."""

QUERY_EXPANSION_PROMPT: str = """Write {n} alternative phrasings of the question below.
Each phrasing must keep the original meaning but use different words, synonyms or sentence structure, so that together they help find relevant documents.
Put every phrasing on its own line. Do not number them, do not use bullets or hyphens, and do not add anything else.

Question: {query}"""


# ══════════════════════════════════════════════════════════════════════
#  PROMPT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════

NO_CONTEXT_MARKER: str = "No relevant documents found."

CONTEXT_ENTRY_TEMPLATE: str = "[{index}] Source: {source} (relevance: {score:.2f})\n{text}"

AUGMENTED_PROMPT_TEMPLATE: str = "Context:\n{context}\n\nUser Question:\n{question}"
