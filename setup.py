from setuptools import find_packages, setup

setup(
    name='mediaconv',
    version='0.1',
    packages=find_packages(exclude=['tests']),
    package_data={'mediaconv': ['templates/*.html']},
    install_requires=[
        'fastapi',
        'uvicorn',
        'python-multipart',
        'python-dotenv',
        'jinja2',
        'stripe>=8',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx',
        ],
    },
)
