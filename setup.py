from setuptools import setup, find_packages

setup(
    name="discourse-crawler",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "httpx>=0.27.0",
        "orjson>=3.9.0",
        "SQLAlchemy>=2.0.0",
        "tqdm>=4.66.0",
        "click>=8.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "discourse-crawler=discourse_crawler.cli:main",
        ],
    },
    python_requires=">=3.8",
)
