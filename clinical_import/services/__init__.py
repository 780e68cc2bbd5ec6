"""Application services for Clinical Import.

``format_detector`` decides which importer handles a document and
``import_service`` dispatches the import. Import the submodules directly; the
importers depend on the detector, so this package stays free of eager imports.
"""
