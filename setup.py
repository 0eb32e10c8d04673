from setuptools import setup, find_packages

setup(
    name="podsite",
    version="1.0.0",
    description="Content manager for a podcast website: synchronized transcripts, subscribers and email notifications",
    author="PodSite Team",
    author_email="info@podsite.example.com",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "structlog>=23.1",
        "PyYAML>=6.0",
        "python-dotenv>=1.0",
        "requests>=2.31",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "podsite=podsite.__main__:main",
        ],
    },
)
