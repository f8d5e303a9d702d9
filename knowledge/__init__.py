"""Knowledge base: ranked retrieval of help articles for the assistant."""
from knowledge.index import KnowledgeBaseIndex
from knowledge.ranking import LexicalRanker, Ranker, fold, tokenize
