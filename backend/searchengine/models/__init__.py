from searchengine.models.base import Base
from searchengine.models.site import Site, SiteStatus
from searchengine.models.page import Page
from searchengine.models.lemma import Lemma
from searchengine.models.index_entry import IndexEntry

__all__ = ["Base", "Site", "SiteStatus", "Page", "Lemma", "IndexEntry"]
